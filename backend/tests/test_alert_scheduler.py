"""
Tests for alert planning and regeneration.
"""
from datetime import date, timedelta

from sqlalchemy import select

from renewal_tracker.models.models import AlertEvent, AlertStatus, AlertType, ContractRecord
from renewal_tracker.services.alert_scheduler import AlertScheduler, plan_alerts

TODAY = date(2025, 3, 1)


def _add_contract(db, next_renewal_date, notice_period_days=None, contract_id="contract-1"):
    record = ContractRecord(
        id=contract_id,
        user_id="user-1",
        title="Box internet",
        currency="EUR",
        next_renewal_date=next_renewal_date,
        notice_period_days=notice_period_days,
    )
    db.add(record)
    db.commit()
    return record


def _events(db, contract_id="contract-1"):
    return db.execute(
        select(AlertEvent).where(AlertEvent.contract_id == contract_id).order_by(AlertEvent.scheduled_for)
    ).scalars().all()


class TestPlanAlerts:

    def test_renewal_in_45_days_with_30_day_notice(self):
        renewal = TODAY + timedelta(days=45)

        planned = plan_alerts("Box internet", renewal, 30, TODAY)

        assert [(p.type, p.scheduled_for) for p in planned] == [
            (AlertType.NOTICE_DEADLINE, renewal - timedelta(days=30)),
            (AlertType.RENEWAL_WARNING, renewal - timedelta(days=30)),
            (AlertType.RENEWAL_WARNING, renewal - timedelta(days=7)),
        ]
        assert {p.offset_days for p in planned} == {30, 7}

    def test_far_renewal_gets_every_alert(self):
        renewal = date(2025, 12, 31)

        planned = plan_alerts("Box internet", renewal, 60, TODAY)

        assert [p.scheduled_for for p in planned] == [
            date(2025, 10, 2),
            date(2025, 11, 1),
            date(2025, 12, 1),
            date(2025, 12, 24),
        ]
        assert planned[1].type == AlertType.NOTICE_DEADLINE

    def test_messages_name_the_contract(self):
        planned = plan_alerts("Box internet", date(2025, 12, 31), None, TODAY)

        assert planned[0].message == 'Contract "Box internet" renews in 3 months'
        assert all("Box internet" in p.message for p in planned)

    def test_past_renewal_has_no_alerts(self):
        assert plan_alerts("Box internet", TODAY - timedelta(days=1), 30, TODAY) == []

    def test_missing_renewal_date(self):
        assert plan_alerts("Box internet", None, 30, TODAY) == []

    def test_renewal_today_only_expires(self):
        planned = plan_alerts("Box internet", TODAY, 30, TODAY)

        assert len(planned) == 1
        assert planned[0].type == AlertType.CONTRACT_EXPIRED
        assert planned[0].scheduled_for == TODAY

    def test_non_positive_notice_period_is_ignored(self):
        for notice in (None, 0, -5):
            planned = plan_alerts("Box internet", date(2025, 12, 31), notice, TODAY)
            assert all(p.type == AlertType.RENEWAL_WARNING for p in planned)
            assert len(planned) == 3

    def test_notice_alert_due_today_is_kept(self):
        planned = plan_alerts("Box internet", TODAY + timedelta(days=10), 10, TODAY)

        assert planned[0].type == AlertType.NOTICE_DEADLINE
        assert planned[0].scheduled_for == TODAY

    def test_notice_period_before_earliest_date_is_skipped(self):
        planned = plan_alerts("Box internet", date(2025, 12, 31), 1_000_000, TODAY)

        assert [p.offset_days for p in planned] == [90, 30, 7]
        assert all(p.type == AlertType.RENEWAL_WARNING for p in planned)

    def test_notice_period_just_inside_the_calendar(self):
        renewal = date(1, 1, 10)

        planned = plan_alerts("Box internet", renewal, 9, date(1, 1, 1))

        assert [(p.type, p.scheduled_for) for p in planned] == [
            (AlertType.NOTICE_DEADLINE, date(1, 1, 1)),
            (AlertType.RENEWAL_WARNING, date(1, 1, 3)),
        ]


class TestAlertScheduler:

    def test_regenerate_with_oversized_notice_period(self, db):
        record = _add_contract(db, date(2025, 12, 31), 1_000_000)

        events = AlertScheduler().regenerate(db, record, TODAY)
        db.commit()

        assert len(events) == 3
        assert all(e.type == AlertType.RENEWAL_WARNING.value for e in _events(db))


    def test_regenerate_creates_pending_events(self, db):
        record = _add_contract(db, date(2025, 12, 31), 60)

        AlertScheduler().regenerate(db, record, TODAY)
        db.commit()

        events = _events(db)
        assert len(events) == 4
        assert all(e.status == AlertStatus.PENDING.value for e in events)
        assert all(e.notification_method == "email" for e in events)

    def test_regenerate_is_idempotent(self, db):
        record = _add_contract(db, date(2025, 12, 31), 60)
        scheduler = AlertScheduler()

        scheduler.regenerate(db, record, TODAY)
        db.commit()
        first = [(e.type, e.scheduled_for) for e in _events(db)]
        scheduler.regenerate(db, record, TODAY)
        db.commit()
        second = [(e.type, e.scheduled_for) for e in _events(db)]

        assert first == second

    def test_regenerate_replaces_old_schedule(self, db):
        record = _add_contract(db, date(2025, 12, 31), 60)
        scheduler = AlertScheduler()
        scheduler.regenerate(db, record, TODAY)
        db.commit()

        record.next_renewal_date = date(2025, 6, 30)
        record.notice_period_days = None
        scheduler.regenerate(db, record, TODAY)
        db.commit()

        events = _events(db)
        assert [e.scheduled_for for e in events] == [date(2025, 4, 1), date(2025, 5, 31), date(2025, 6, 23)]
        assert all(e.type == AlertType.RENEWAL_WARNING.value for e in events)

    def test_clearing_the_renewal_date_removes_alerts(self, db):
        record = _add_contract(db, date(2025, 12, 31), 60)
        scheduler = AlertScheduler()
        scheduler.regenerate(db, record, TODAY)
        db.commit()

        record.next_renewal_date = None
        assert scheduler.regenerate(db, record, TODAY) == []
        db.commit()

        assert _events(db) == []

    def test_other_contracts_are_untouched(self, db):
        first = _add_contract(db, date(2025, 12, 31), 60, contract_id="contract-1")
        second = _add_contract(db, date(2025, 12, 31), 60, contract_id="contract-2")
        scheduler = AlertScheduler()
        scheduler.regenerate(db, first, TODAY)
        scheduler.regenerate(db, second, TODAY)
        db.commit()

        first.next_renewal_date = None
        scheduler.regenerate(db, first, TODAY)
        db.commit()

        assert len(_events(db, "contract-2")) == 4
