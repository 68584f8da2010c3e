"""Tests for row-level update publishing."""

from uuid import uuid4

import pytest

from returnflow.db.models.base import CaseState
from returnflow.services.events import CaseEventPublisher, CaseRowUpdate
from tests.factories import build_case


def _update(version: int = 1) -> CaseRowUpdate:
    return CaseRowUpdate(parcel_id="12", case_id=uuid4(), version=version, state="open_return")


class TestCaseRowUpdate:
    def test_from_case(self):
        case = build_case(
            CaseState.EXCHANGE_IN_PROGRESS,
            exchange_parcel_id="ex-1",
            reverse_track_number="RR1",
            version=3,
        )

        update = CaseRowUpdate.from_case(case)

        assert update.state == "exchange_in_progress"
        assert update.exchange_parcel_id == "ex-1"
        assert update.reverse_track_number == "RR1"
        assert update.version == 3

    def test_to_dict_stringifies_case_id(self):
        update = _update()
        assert update.to_dict()["case_id"] == str(update.case_id)


class TestCaseEventPublisher:
    @pytest.mark.asyncio
    async def test_sync_and_async_subscribers(self):
        publisher = CaseEventPublisher()
        received = []

        async def async_subscriber(update):
            received.append(("async", update.version))

        publisher.subscribe(lambda update: received.append(("sync", update.version)))
        publisher.subscribe(async_subscriber)

        await publisher.publish(_update(5))

        assert received == [("sync", 5), ("async", 5)]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        publisher = CaseEventPublisher()
        received = []
        unsubscribe = publisher.subscribe(received.append)

        unsubscribe()
        unsubscribe()
        await publisher.publish(_update())

        assert received == []

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_stop_others(self, caplog):
        publisher = CaseEventPublisher()
        received = []

        def broken(update):
            raise RuntimeError("socket closed")

        publisher.subscribe(broken)
        publisher.subscribe(received.append)

        await publisher.publish(_update())

        assert len(received) == 1
        assert "Case update subscriber failed" in caplog.text
