"""Offsetting transactions for goal balance changes.

Money moved into a goal leaves the available balance, money moved out of a
goal (or refunded when a goal is deleted) comes back. The engine never
records that movement on its own: each goal mutation returns a proposed
transaction, and the caller confirms or declines it.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from errors import NotFoundError, ValidationError
from models import GoalType, TransactionType
from schemas import GoalIn, GoalOut, TransactionIn, TransactionOut

if TYPE_CHECKING:  # pragma: no cover
    from services import Workspace


logger = logging.getLogger(__name__)

FALLBACK_CATEGORY = "Other"
SAVINGS_CATEGORY = "Savings"
DEBT_CATEGORIES = ("Debt payment", "Bills/Services")
CENT = Decimal("0.01")


@dataclass(frozen=True)
class ProposedTransaction:
    id: str
    goal_id: int
    type: TransactionType
    category: str
    amount: Decimal
    note: str

    def as_input(self) -> TransactionIn:
        return TransactionIn(
            type=self.type, category=self.category, amount=self.amount, note=self.note
        )


@dataclass(frozen=True)
class GoalChange:
    goal: Optional[GoalOut]
    proposal: Optional[ProposedTransaction] = None
    transaction: Optional[TransactionOut] = None


def goal_category(goal_type: GoalType, expense_categories: list[str]) -> str:
    if goal_type == GoalType.saving:
        preferred: tuple[str, ...] = (SAVINGS_CATEGORY,)
    else:
        preferred = DEBT_CATEGORIES
    for name in expense_categories:
        if name in preferred:
            return name
    # may name a category that does not exist for this owner
    return FALLBACK_CATEGORY


class ReconciliationEngine:
    def __init__(self, workspace: "Workspace") -> None:
        self.workspace = workspace
        self._pending: dict[str, ProposedTransaction] = {}
        self._lock = threading.Lock()

    def _propose(
        self,
        goal: GoalOut,
        txn_type: TransactionType,
        amount: Decimal,
        note: str,
    ) -> ProposedTransaction:
        if txn_type == TransactionType.expense:
            category = goal_category(
                goal.type, self.workspace.categories.names(TransactionType.expense)
            )
        else:
            category = FALLBACK_CATEGORY
        proposal = ProposedTransaction(
            id=uuid.uuid4().hex,
            goal_id=goal.id,
            type=txn_type,
            category=category,
            amount=amount.quantize(CENT),
            note=note,
        )
        with self._lock:
            self._pending[proposal.id] = proposal
        logger.info(
            f"proposal_created: owner={self.workspace.owner_id} goal={goal.id} "
            f"type={txn_type.value} amount={amount} category={category!r}"
        )
        return proposal

    def pending(self) -> list[ProposedTransaction]:
        with self._lock:
            return list(self._pending.values())

    def create_goal(self, data: GoalIn) -> GoalChange:
        goal = self.workspace.goals.create(data)
        proposal = None
        if goal.current_amount > 0:
            proposal = self._propose(
                goal,
                TransactionType.expense,
                goal.current_amount,
                f"opened new goal: {goal.name}",
            )
        return GoalChange(goal=goal, proposal=proposal)

    def update_goal(self, goal: GoalOut) -> GoalChange:
        previous = self.workspace.goals.get(goal.id)
        updated = self.workspace.goals.update(goal)
        delta = updated.current_amount - previous.current_amount
        proposal = None
        if delta > 0:
            proposal = self._propose(
                updated,
                TransactionType.expense,
                delta,
                f"goal adjustment (increase): {updated.name}",
            )
        elif delta < 0:
            proposal = self._propose(
                updated,
                TransactionType.income,
                -delta,
                f"goal adjustment (decrease): {updated.name}",
            )
        return GoalChange(goal=updated, proposal=proposal)

    def quick_add(self, goal_id: int, amount: Decimal) -> GoalChange:
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero")
        goal = self.workspace.goals.get(goal_id)
        new_amount = goal.current_amount + amount
        if new_amount > goal.target_amount:
            raise ValidationError(
                f"Adding {amount} would exceed the target of {goal.target_amount} "
                f"for '{goal.name}'"
            )
        updated = self.workspace.goals.update(
            goal.model_copy(update={"current_amount": new_amount})
        )
        proposal = self._propose(
            updated, TransactionType.expense, amount, f"goal top-up: {updated.name}"
        )
        return GoalChange(goal=updated, proposal=proposal)

    def preview_goal_deletion(self, goal_id: int) -> Optional[ProposedTransaction]:
        """The refund that ``delete_goal(refund=True)`` would record, if any."""
        return self._refund(self.workspace.goals.get(goal_id))

    def _refund(self, goal: GoalOut) -> Optional[ProposedTransaction]:
        if goal.current_amount <= 0:
            return None
        return ProposedTransaction(
            id="",
            goal_id=goal.id,
            type=TransactionType.income,
            category=FALLBACK_CATEGORY,
            amount=goal.current_amount,
            note=f"refund from deleted goal: {goal.name}",
        )

    def delete_goal(self, goal_id: int, *, refund: bool = False) -> GoalChange:
        refund_txn = None
        if refund:
            # read past the cache: the goal and its refund may already be gone
            try:
                goal = self.workspace.goals.fetch(goal_id)
            except NotFoundError:
                self._discard_for_goal(goal_id)
                raise
            proposal = self._refund(goal)
            if proposal is not None:
                refund_txn = self.workspace.transactions.create(proposal.as_input())
        self.workspace.goals.delete(goal_id)
        self._discard_for_goal(goal_id)
        return GoalChange(goal=None, transaction=refund_txn)

    def confirm(self, proposal_id: str) -> TransactionOut:
        with self._lock:
            proposal = self._pending.pop(proposal_id, None)
        if proposal is None:
            raise NotFoundError("Proposed transaction not found or already handled")
        try:
            txn = self.workspace.transactions.create(proposal.as_input())
        except Exception:
            # keep it pending so the caller can retry
            with self._lock:
                self._pending[proposal.id] = proposal
            raise
        logger.info(
            f"proposal_confirmed: owner={self.workspace.owner_id} "
            f"goal={proposal.goal_id} transaction={txn.id}"
        )
        return txn

    def decline(self, proposal_id: str) -> None:
        with self._lock:
            proposal = self._pending.pop(proposal_id, None)
        if proposal is None:
            raise NotFoundError("Proposed transaction not found or already handled")
        logger.info(
            f"proposal_declined: owner={self.workspace.owner_id} goal={proposal.goal_id}"
        )

    def _discard_for_goal(self, goal_id: int) -> None:
        with self._lock:
            for key in [k for k, p in self._pending.items() if p.goal_id == goal_id]:
                del self._pending[key]

    def discard_all(self) -> None:
        with self._lock:
            self._pending.clear()
