"""Budget alert deduplication and fan-out.

An alert is identified by (account, category group, kind, period). The first
evaluation that sees a group at ``warning_90`` or ``exceeded`` notifies every
account member and then writes the marker; later evaluations in the same
period find the marker and stay quiet. Delivery is best effort: the marker is
written once sending has been attempted, whatever the per-member outcome.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from budgeting import CategoryGroupSpend, CategorySignature
from config import get_settings
from database import insert_or_ignore
from models import AccountMember, AlertKind, AlertMarker, BudgetStatus
from notifications import Notification, NotificationSender, default_sender
from periods import Period


logger = logging.getLogger(__name__)

NOTIFICATION_KINDS = {
    AlertKind.warning_90: "budget_threshold_90",
    AlertKind.exceeded: "budget_exceeded",
}


class MarkerStore(Protocol):
    def exists(
        self, account_id: int, group_key: str, kind: AlertKind, period: Period
    ) -> bool:  # pragma: no cover - interface
        ...

    def create(
        self, account_id: int, group_key: str, kind: AlertKind, period: Period
    ) -> bool:  # pragma: no cover - interface
        """Write the marker; False when it already existed."""
        ...


class MembershipProvider(Protocol):
    def list_members(self, account_id: int) -> list[int]:  # pragma: no cover - interface
        ...


class SqlMarkerStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def exists(
        self, account_id: int, group_key: str, kind: AlertKind, period: Period
    ) -> bool:
        stmt = (
            select(AlertMarker.id)
            .where(
                AlertMarker.account_id == account_id,
                AlertMarker.category_group == group_key,
                AlertMarker.kind == kind,
                AlertMarker.year == period.year,
                AlertMarker.month == period.month,
            )
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none() is not None

    def create(
        self, account_id: int, group_key: str, kind: AlertKind, period: Period
    ) -> bool:
        marker = AlertMarker(
            account_id=account_id,
            category_group=group_key,
            kind=kind,
            year=period.year,
            month=period.month,
        )
        written = insert_or_ignore(self.session, marker)
        # Durable before the next group is evaluated.
        self.session.commit()
        return written


class SqlMembershipProvider:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_members(self, account_id: int) -> list[int]:
        stmt = (
            select(AccountMember.user_id)
            .where(AccountMember.account_id == account_id)
            .order_by(AccountMember.user_id)
        )
        return list(self.session.scalars(stmt).all())


@dataclass(frozen=True)
class AlertOutcome:
    signature: CategorySignature
    kind: AlertKind
    delivered: int
    failed: int
    marker_written: bool


def build_notification(
    member_id: int,
    account_id: int,
    group: CategoryGroupSpend,
    kind: AlertKind,
    period: Period,
) -> Notification:
    amount = f"{group.allotted:,.2f}"
    if kind == AlertKind.exceeded:
        title = "Budget exceeded"
        body = f'Category "{group.label}" exceeded its budget ({amount})'
    else:
        title = "Budget reached 90%"
        body = f'Category "{group.label}" reached 90% of its budget ({amount})'
    return Notification(
        member_id=member_id,
        account_id=account_id,
        kind=NOTIFICATION_KINDS[kind],
        title=title,
        body=body,
        data={
            "category": group.label,
            "month": str(period.month),
            "year": str(period.year),
        },
        action_url="/dashboard",
    )


class AlertDispatcher:
    def __init__(
        self,
        markers: MarkerStore,
        members: MembershipProvider,
        sender: Optional[NotificationSender] = None,
        *,
        timeout: Optional[float] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        settings = get_settings()
        self.markers = markers
        self.members = members
        self.sender = sender or default_sender()
        self.timeout = settings.notify_timeout_secs if timeout is None else timeout
        self.max_workers = max_workers or settings.notify_max_workers

    def process(
        self,
        account_id: int,
        groups: Iterable[CategoryGroupSpend],
        period: Period,
    ) -> list[AlertOutcome]:
        outcomes: list[AlertOutcome] = []
        for group in groups:
            status = group.status()
            if status == BudgetStatus.ok:
                continue
            kind = AlertKind(status.value)
            key = group.signature.key
            if self.markers.exists(account_id, key, kind, period):
                continue
            outcome = self._alert(account_id, group, kind, period)
            if outcome is not None:
                outcomes.append(outcome)
        return outcomes

    def _alert(
        self,
        account_id: int,
        group: CategoryGroupSpend,
        kind: AlertKind,
        period: Period,
    ) -> Optional[AlertOutcome]:
        try:
            member_ids = self.members.list_members(account_id)
        except Exception:
            logger.warning(
                f"alert_members_failed: account_id={account_id} group={group.label!r}",
                exc_info=True,
            )
            return None
        if not member_ids:
            logger.info(
                f"alert_no_members: account_id={account_id} group={group.label!r} kind={kind.value}"
            )
            return None

        notifications = [
            build_notification(member_id, account_id, group, kind, period)
            for member_id in member_ids
        ]
        delivered, failed = self._fan_out(notifications)

        written = self.markers.create(account_id, group.signature.key, kind, period)
        if written:
            logger.info(
                f"alert_sent: account_id={account_id} group={group.label!r} kind={kind.value} "
                f"period={period.slug} delivered={delivered} failed={failed}"
            )
        else:
            logger.info(
                f"alert_marker_conflict: account_id={account_id} group={group.label!r} "
                f"kind={kind.value} period={period.slug}"
            )
        return AlertOutcome(group.signature, kind, delivered, failed, written)

    def _fan_out(self, notifications: list[Notification]) -> tuple[int, int]:
        pool = ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(notifications)),
            thread_name_prefix="budget-alert",
        )
        try:
            futures = {
                pool.submit(self.sender.send, notification): notification
                for notification in notifications
            }
            done, not_done = wait(futures, timeout=self.timeout)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        delivered = 0
        failed = 0
        for future in done:
            notification = futures[future]
            exc = future.exception()
            if exc is None:
                delivered += 1
                continue
            failed += 1
            logger.warning(
                f"alert_delivery_failed: member_id={notification.member_id} "
                f"account_id={notification.account_id} kind={notification.kind}",
                exc_info=exc,
            )
        for future in not_done:
            notification = futures[future]
            failed += 1
            logger.warning(
                f"alert_delivery_timeout: member_id={notification.member_id} "
                f"account_id={notification.account_id} kind={notification.kind} "
                f"timeout={self.timeout}"
            )
        return delivered, failed
