"""Settlement engine: turn net amounts into a short list of payments.

Greedy largest-creditor / largest-debtor matching. Each payment fully
clears at least one side, so N non-zero participants need at most N-1
payments, and summing the payments per player gives back the input nets.
"""

from __future__ import annotations

from typing import Mapping

from teenpatti.models import SettlementTransaction
from teenpatti.money import round_money


def settle(net_amounts: Mapping[str, float]) -> list[SettlementTransaction]:
    """Return the payments that reconcile ``net_amounts``.

    Positive nets are owed money, negative nets owe money.
    """
    creditors: list[list] = []
    debtors: list[list] = []

    for player_id, amount in net_amounts.items():
        rounded = round_money(amount)
        if rounded > 0:
            creditors.append([player_id, rounded])
        elif rounded < 0:
            debtors.append([player_id, round_money(-rounded)])

    # Largest first; ties broken by id so the output is deterministic
    creditors.sort(key=lambda c: (-c[1], c[0]))
    debtors.sort(key=lambda d: (-d[1], d[0]))

    transactions: list[SettlementTransaction] = []
    i = j = 0
    while i < len(creditors) and j < len(debtors):
        creditor = creditors[i]
        debtor = debtors[j]
        amount = round_money(min(creditor[1], debtor[1]))

        transactions.append(
            SettlementTransaction(
                from_player_id=debtor[0],
                to_player_id=creditor[0],
                amount=amount,
            )
        )

        creditor[1] = round_money(creditor[1] - amount)
        debtor[1] = round_money(debtor[1] - amount)

        if creditor[1] <= 0:
            i += 1
        if debtor[1] <= 0:
            j += 1

    return transactions
