import uuid
from dataclasses import dataclass
from datetime import date, timedelta
from typing import List, Optional

from loguru import logger
from sqlalchemy import delete, update
from sqlalchemy.orm import Session

from ..models.models import AlertEvent, AlertStatus, AlertType, ContractRecord

# (alert type, days before renewal, message template); None means the notice period
ALERT_OFFSETS = [
    (AlertType.RENEWAL_WARNING, 90, 'Contract "{title}" renews in 3 months'),
    (AlertType.RENEWAL_WARNING, 30, 'Contract "{title}" renews in 1 month'),
    (AlertType.NOTICE_DEADLINE, None, 'Last day to cancel contract "{title}" before it renews automatically'),
    (AlertType.RENEWAL_WARNING, 7, 'Contract "{title}" renews in 1 week'),
]
EXPIRED_MESSAGE = 'Contract "{title}" expired today'


@dataclass(frozen=True)
class PlannedAlert:
    type: AlertType
    scheduled_for: date
    offset_days: int
    message: str


def plan_alerts(title: str, next_renewal_date: Optional[date],
                notice_period_days: Optional[int], today: date) -> List[PlannedAlert]:
    """
    Compute the alert schedule for one contract.

    Args:
        title: Contract title used in messages
        next_renewal_date: Renewal date (UTC calendar date)
        notice_period_days: Notice period, ignored unless positive; offsets
            before the earliest representable date are skipped
        today: Current UTC date

    Returns:
        Planned alerts ordered by date, at most one per (type, date)
    """
    if next_renewal_date is None or next_renewal_date < today:
        return []

    if next_renewal_date == today:
        return [PlannedAlert(
            type=AlertType.CONTRACT_EXPIRED,
            scheduled_for=today,
            offset_days=0,
            message=EXPIRED_MESSAGE.format(title=title),
        )]

    planned = []
    seen = set()
    for alert_type, offset, template in ALERT_OFFSETS:
        if offset is None:
            if not notice_period_days or notice_period_days <= 0:
                continue
            offset = notice_period_days
        # Offsets reaching past date.min have no representable schedule date
        if offset > (next_renewal_date - date.min).days:
            logger.warning(f"Skipping {alert_type.value} alert for '{title}': {offset} days before {next_renewal_date}")
            continue
        scheduled_for = next_renewal_date - timedelta(days=offset)
        if scheduled_for < today or (alert_type, scheduled_for) in seen:
            continue
        seen.add((alert_type, scheduled_for))
        planned.append(PlannedAlert(
            type=alert_type,
            scheduled_for=scheduled_for,
            offset_days=offset,
            message=template.format(title=title),
        ))

    return sorted(planned, key=lambda p: (p.scheduled_for, p.type.value))


class AlertScheduler:
    """Rebuilds a contract's alert events inside the caller's transaction."""

    def regenerate(self, db: Session, record: ContractRecord, today: date) -> List[AlertEvent]:
        db.execute(
            delete(AlertEvent)
            .where(AlertEvent.contract_id == record.id)
            .execution_options(synchronize_session=False)
        )
        db.expire(record, ["alerts"])

        planned = plan_alerts(record.title, record.next_renewal_date, record.notice_period_days, today)
        if not planned:
            logger.info(f"No alerts scheduled for contract {record.id} (renewal date: {record.next_renewal_date})")
            return []

        events = [
            AlertEvent(
                id=str(uuid.uuid4()),
                contract_id=record.id,
                type=p.type.value,
                scheduled_for=p.scheduled_for,
                status=AlertStatus.PENDING.value,
                notification_method="email",
                message=p.message,
            )
            for p in planned
        ]
        db.add_all(events)
        db.flush()

        # Expiry events can only sit on the renewal date itself
        db.execute(
            delete(AlertEvent)
            .where(
                AlertEvent.contract_id == record.id,
                AlertEvent.type == AlertType.CONTRACT_EXPIRED.value,
                AlertEvent.status == AlertStatus.PENDING.value,
                AlertEvent.scheduled_for > record.next_renewal_date,
            )
            .execution_options(synchronize_session=False)
        )
        db.execute(
            update(AlertEvent)
            .where(
                AlertEvent.contract_id == record.id,
                AlertEvent.status == AlertStatus.PENDING.value,
                AlertEvent.scheduled_for < today,
            )
            .values(status=AlertStatus.EXPIRED.value)
            .execution_options(synchronize_session=False)
        )

        logger.info(
            f"Scheduled {len(events)} alerts for contract {record.id} "
            f"(renewal date: {record.next_renewal_date.isoformat()})"
        )
        return events
