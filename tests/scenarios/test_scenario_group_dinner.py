"""
Scenario: a $90 dinner split three ways, everyone pays, the creator is told once
"""
from decimal import Decimal

import pytest

from splitledger.db.models.notification import NotificationType
from splitledger.db.models.split_event import ParticipantStatus

from tests.scenarios.conftest import (
    accept,
    assert_participant_status,
    assert_wallet_balance,
    count_notifications,
    create_split,
    pay,
)


@pytest.mark.scenario
class TestGroupDinner:

    async def test_everyone_pays_from_wallet(self, test_client, db_session, wallet_factory, as_user):
        await wallet_factory("bob", balance="50.00")
        await wallet_factory("carol", balance="30.00")

        created = await create_split(test_client, as_user("alice"), "Dinner", "90.00", ["bob", "carol"])
        assert created.status_code == 201
        event_id = created.json()["id"]

        assert await count_notifications(db_session, "bob", NotificationType.SPLIT_INVITE) == 1
        assert await count_notifications(db_session, "carol", NotificationType.SPLIT_INVITE) == 1

        for user in ("bob", "carol"):
            response = await accept(test_client, as_user(user), event_id)
            assert response.status_code == 200

        bob_paid = await pay(test_client, as_user("bob"), event_id)
        assert bob_paid.status_code == 200
        assert bob_paid.json()["split_completed"] is False

        carol_paid = await pay(test_client, as_user("carol"), event_id)
        assert carol_paid.status_code == 200
        assert carol_paid.json()["split_completed"] is True

        await assert_wallet_balance(db_session, "alice", "60.00")
        await assert_wallet_balance(db_session, "bob", "20.00")
        await assert_wallet_balance(db_session, "carol", "0.00")
        await assert_participant_status(db_session, event_id, "carol", ParticipantStatus.PAID)
        assert await count_notifications(db_session, "alice", NotificationType.SPLIT_COMPLETED) == 1

        # paying again changes nothing
        again = await pay(test_client, as_user("bob"), event_id)
        assert again.status_code == 409
        await assert_wallet_balance(db_session, "bob", "20.00")

        # money has moved, so the split can no longer be deleted
        deleted = await test_client.delete(f"/api/splits/{event_id}", headers=as_user("alice"))
        assert deleted.status_code == 409

    async def test_bank_covers_the_rest(self, test_client, db_session, wallet_factory, bank_rail, as_user):
        await wallet_factory("bob", balance="10.00", bank_connected=True)

        event_id = (await create_split(test_client, as_user("alice"), "Dinner", "90.00", ["bob", "carol"])).json()["id"]
        await accept(test_client, as_user("bob"), event_id)

        response = await pay(test_client, as_user("bob"), event_id)

        assert response.status_code == 200
        body = response.json()
        assert body["rail"] == "bank_debit"
        assert Decimal(body["wallet_amount"]) == Decimal("10.00")
        assert Decimal(body["external_amount"]) == Decimal("20.00")
        assert bank_rail.payments[0]["amount"] == Decimal("20.00")
        await assert_wallet_balance(db_session, "bob", "0.00")
        await assert_wallet_balance(db_session, "alice", "30.00")
