# Overview: Pytest coverage for order numbering (per-organization counters, per-day reset).

from datetime import date, datetime

import pytest

from eventpos.models import OrderSequence
from eventpos.services import sequence_service
from eventpos.services.errors import ValidationError


class TestOrderNumbers:
    def test_numbers_increase_per_organization_and_day(self, db_session, org, other_org):
        day = date(2026, 10, 19)

        first = sequence_service.next_order_number(org.id, day)
        second = sequence_service.next_order_number(org.id, day)
        foreign = sequence_service.next_order_number(other_org.id, day)
        db_session.commit()

        assert first == "20261019-0001"
        assert second == "20261019-0002"
        assert foreign == "20261019-0001"

    def test_new_business_day_restarts_at_one(self, db_session, org):
        sequence_service.next_order_number(org.id, date(2026, 10, 19))
        sequence_service.next_order_number(org.id, date(2026, 10, 19))
        next_day = sequence_service.next_order_number(org.id, date(2026, 10, 20))

        assert next_day == "20261020-0001"

    def test_counter_is_one_row_per_scope_and_day(self, db_session, org):
        day = date(2026, 10, 19)
        for _ in range(5):
            sequence_service.next_order_number(org.id, day)
        db_session.commit()

        rows = db_session.query(OrderSequence).filter_by(organization_id=org.id).all()
        assert len(rows) == 1
        assert rows[0].last_value == 5

    def test_rolled_back_allocation_is_not_consumed(self, db_session, org):
        day = date(2026, 10, 19)
        sequence_service.next_order_number(org.id, day)
        db_session.commit()

        sequence_service.next_order_number(org.id, day)
        db_session.rollback()

        assert sequence_service.next_order_number(org.id, day) == "20261019-0002"

    def test_missing_inputs_rejected(self, db_session, org):
        with pytest.raises(ValidationError):
            sequence_service.next_order_number(None, date(2026, 10, 19))
        with pytest.raises(ValidationError):
            sequence_service.next_order_number(org.id, None)


class TestDailyNumbers:
    def test_daily_numbers_are_per_sales_context(self, db_session, org, sales_context, draft_context):
        day = date(2026, 10, 19)

        assert sequence_service.next_daily_number(org.id, sales_context.id, day) == 1
        assert sequence_service.next_daily_number(org.id, sales_context.id, day) == 2
        assert sequence_service.next_daily_number(org.id, draft_context.id, day) == 1

    def test_daily_and_order_counters_are_independent(self, db_session, org, sales_context):
        day = date(2026, 10, 19)
        sequence_service.next_order_number(org.id, day)
        sequence_service.next_order_number(org.id, day)

        assert sequence_service.next_daily_number(org.id, sales_context.id, day) == 1


class TestBusinessDate:
    def test_business_date_uses_organization_timezone(self, db_session, org):
        # 23:30 UTC on the 19th is already the 20th in Berlin (UTC+2 in October)
        late_evening = datetime(2026, 10, 19, 23, 30)
        assert sequence_service.business_date_for(org, late_evening) == date(2026, 10, 20)

    def test_unknown_timezone_falls_back_to_utc(self, db_session, org):
        org.timezone = "Not/AZone"
        assert sequence_service.business_date_for(org, datetime(2026, 10, 19, 23, 30)) == date(2026, 10, 19)
