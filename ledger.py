"""Account balance bookkeeping for transaction lifecycle events.

A transaction moves money only while it is COMPLETED and active. Every write
hands the state before and after the change to :func:`apply_transaction_effect`,
which adds the difference of the two effects to the owning account(s) with an
atomic ``balance = balance + delta`` update. Callers run it inside the same
unit of work as the transaction write so both commit or neither does.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from errors import NotFoundError, ValidationError
from models import Account, Transaction, TransactionKind, TransactionStatus


logger = logging.getLogger(__name__)

_SIGNS = {
    TransactionKind.income: 1,
    TransactionKind.expense: -1,
    TransactionKind.investment: -1,
}


@dataclass(frozen=True)
class TransactionState:
    kind: TransactionKind
    status: TransactionStatus
    is_active: bool
    amount_cents: int
    account_id: int
    to_account_id: Optional[int] = None

    @classmethod
    def of(cls, txn: Transaction) -> "TransactionState":
        return cls(
            kind=TransactionKind(txn.kind),
            status=TransactionStatus(txn.status),
            is_active=bool(txn.is_active),
            amount_cents=txn.amount_cents,
            account_id=txn.account_id,
            to_account_id=txn.to_account_id,
        )

    @property
    def account_ids(self) -> set[int]:
        ids = {self.account_id}
        if self.to_account_id is not None:
            ids.add(self.to_account_id)
        return ids


@dataclass(frozen=True)
class LedgerResult:
    deltas: dict[int, int] = field(default_factory=dict)
    balances: dict[int, int] = field(default_factory=dict)


def balance_effects(state: Optional[TransactionState]) -> dict[int, int]:
    """Signed balance contribution of ``state`` per account id."""
    if state is None:
        return {}
    if state.status != TransactionStatus.completed or not state.is_active:
        return {}
    if state.kind == TransactionKind.transfer:
        effects = {state.account_id: -state.amount_cents}
        if state.to_account_id is not None:
            effects[state.to_account_id] = (
                effects.get(state.to_account_id, 0) + state.amount_cents
            )
        return effects
    return {state.account_id: _SIGNS[state.kind] * state.amount_cents}


def balance_deltas(
    previous: Optional[TransactionState], new: Optional[TransactionState]
) -> dict[int, int]:
    deltas = dict(balance_effects(new))
    for account_id, effect in balance_effects(previous).items():
        deltas[account_id] = deltas.get(account_id, 0) - effect
    return {account_id: delta for account_id, delta in deltas.items() if delta}


def _require_accounts(
    session: Session,
    previous: Optional[TransactionState],
    new: Optional[TransactionState],
    user_id: int,
) -> None:
    if new is None:
        return
    referenced = new.account_ids
    rows = session.execute(
        select(Account.id, Account.is_active).where(
            Account.id.in_(referenced), Account.user_id == user_id
        )
    ).all()
    active_by_id = {row.id: bool(row.is_active) for row in rows}
    missing = referenced - active_by_id.keys()
    if missing:
        raise NotFoundError(f"Account {min(missing)} not found")
    newly_referenced = referenced - (previous.account_ids if previous else set())
    for account_id in sorted(newly_referenced):
        if not active_by_id[account_id]:
            raise ValidationError(f"Account {account_id} is inactive")


def apply_transaction_effect(
    session: Session,
    previous: Optional[TransactionState],
    new: Optional[TransactionState],
    user_id: int,
) -> LedgerResult:
    """Apply ``effect(new) - effect(previous)`` to the affected balances.

    ``previous`` is None on create and ``new`` is None on delete. Raises
    :class:`NotFoundError` when an account is missing or owned by another
    user; the caller's unit of work must then roll back the transaction write.
    """
    _require_accounts(session, previous, new, user_id)
    deltas = balance_deltas(previous, new)
    # Fixed update order keeps concurrent multi-account writes from deadlocking.
    for account_id in sorted(deltas):
        result = session.execute(
            update(Account)
            .where(Account.id == account_id, Account.user_id == user_id)
            .values(balance_cents=Account.balance_cents + deltas[account_id])
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount != 1:
            raise NotFoundError(f"Account {account_id} not found")

    balances: dict[int, int] = {}
    if deltas:
        rows = session.execute(
            select(Account.id, Account.balance_cents).where(
                Account.id.in_(deltas.keys())
            )
        ).all()
        balances = {row.id: int(row.balance_cents) for row in rows}
        logger.debug(f"ledger_applied: deltas={deltas} balances={balances}")
    return LedgerResult(deltas=deltas, balances=balances)


def compute_account_balance(session: Session, account_id: int) -> int:
    """Balance of ``account_id`` recomputed from its transaction history."""
    effective = (
        Transaction.status == TransactionStatus.completed,
        Transaction.is_active.is_(True),
    )
    signed_amount = case(
        (Transaction.kind == TransactionKind.income, Transaction.amount_cents),
        else_=-Transaction.amount_cents,
    )
    outgoing = session.execute(
        select(func.coalesce(func.sum(signed_amount), 0)).where(
            Transaction.account_id == account_id, *effective
        )
    ).scalar_one()
    incoming = session.execute(
        select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            Transaction.to_account_id == account_id,
            Transaction.kind == TransactionKind.transfer,
            *effective,
        )
    ).scalar_one()
    return int(outgoing or 0) + int(incoming or 0)


def recalculate_account_balance(session: Session, account_id: int, user_id: int) -> int:
    """Overwrite the stored balance with the from-scratch value.

    Repair tool only: the account row is locked for the duration of the
    caller's unit of work so concurrent ledger updates cannot interleave.
    """
    account = session.scalar(
        select(Account)
        .where(Account.id == account_id, Account.user_id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if account is None:
        raise NotFoundError("Account not found")
    balance = compute_account_balance(session, account_id)
    if balance != account.balance_cents:
        logger.warning(
            f"balance_drift: account_id={account_id} "
            f"stored={account.balance_cents} computed={balance}"
        )
    account.balance_cents = balance
    session.flush()
    return balance
