import pytest
from unittest.mock import patch

import models
import schemas
from conftest import headers_for, make_group, service_headers
from utils import expenses as expense_service
from utils import settlements as settlement_service
from utils.errors import ExternalConfirmationMismatch, NotFoundError, ValidationError
from utils.ledger import Share, apply_split, get_balance, get_group_balance, ledger_transaction


def _owe(db_session, debtor, creditor, amount, currency="USD", group=None):
    with ledger_transaction(db_session, "seed"):
        apply_split(db_session, creditor.id, currency, [Share(debtor.id, amount)], group.id if group else None)


def _item(friend, original_amount, original_currency="USD", amount=None, currency="USDC"):
    return schemas.SettlementItemCreate(
        friend_id=friend.id,
        original_amount=original_amount,
        original_currency=original_currency,
        amount=original_amount if amount is None else amount,
        currency=currency
    )


def _confirm(*transfers, success=True, error=None):
    return schemas.SettlementConfirm(
        success=success,
        transaction_hash="0xabc",
        error=error,
        transfers=[
            schemas.SettlementTransfer(friend_id=f.id, amount=a, currency=c) for f, a, c in transfers
        ]
    )


def test_create_settlement_is_pending_and_leaves_ledger(db_session, alice, bob):
    _owe(db_session, bob, alice, 5000)

    settlement = settlement_service.create_settlement(
        db_session, bob.id, schemas.SettlementCreate(items=[_item(alice, 50)])
    )

    assert settlement.status == "PENDING"
    items = settlement_service.get_settlement_items(db_session, settlement.id)
    assert [(i.friend_id, i.original_amount, i.amount, i.currency) for i in items] == [
        (alice.id, 5000, 50000000, "USDC")
    ]
    assert get_balance(db_session, bob.id, alice.id, "USD") == 5000


def test_cannot_settle_more_than_owed(db_session, alice, bob):
    _owe(db_session, bob, alice, 5000)

    with pytest.raises(ValidationError):
        settlement_service.create_settlement(
            db_session, bob.id, schemas.SettlementCreate(items=[_item(alice, 60)])
        )
    # Creditor has nothing to settle
    with pytest.raises(ValidationError):
        settlement_service.create_settlement(
            db_session, alice.id, schemas.SettlementCreate(items=[_item(bob, 10)])
        )
    assert db_session.query(models.SettlementTransaction).count() == 0


@pytest.mark.parametrize("items", [
    [],
    ["self"],
    ["alice", "alice"],
])
def test_malformed_settlements_are_rejected(db_session, alice, bob, items):
    _owe(db_session, bob, alice, 5000)
    users = {"alice": alice, "self": bob}

    with pytest.raises(ValidationError):
        settlement_service.create_settlement(
            db_session, bob.id, schemas.SettlementCreate(items=[_item(users[name], 10) for name in items])
        )


def test_confirm_settles_the_ledger(db_session, alice, bob, charlie):
    _owe(db_session, bob, alice, 5000)
    _owe(db_session, bob, charlie, 1500, currency="EUR")
    settlement = settlement_service.create_settlement(db_session, bob.id, schemas.SettlementCreate(items=[
        _item(alice, 50, amount=50),
        _item(charlie, 10, original_currency="EUR", amount=11),
    ]))

    confirmed = settlement_service.confirm_settlement(
        db_session, settlement.id, _confirm((alice, 50, "USDC"), (charlie, 11, "USDC"))
    )

    assert confirmed.status == "COMPLETED"
    assert confirmed.transaction_hash == "0xabc"
    assert confirmed.completed_at is not None
    assert get_balance(db_session, bob.id, alice.id, "USD") == 0
    assert get_balance(db_session, alice.id, bob.id, "USD") == 0
    assert get_balance(db_session, bob.id, charlie.id, "EUR") == 500
    after = {i.friend_id: i.after_settlement_balance for i in settlement_service.get_settlement_items(db_session, settlement.id)}
    assert after == {alice.id: 0, charlie.id: 500}


def test_repeated_confirmation_settles_once(db_session, alice, bob):
    _owe(db_session, bob, alice, 8000)
    settlement = settlement_service.create_settlement(
        db_session, bob.id, schemas.SettlementCreate(items=[_item(alice, 50)])
    )
    confirmation = _confirm((alice, 50, "USDC"))

    settlement_service.confirm_settlement(db_session, settlement.id, confirmation)
    again = settlement_service.confirm_settlement(db_session, settlement.id, confirmation)

    assert again.status == "COMPLETED"
    assert get_balance(db_session, bob.id, alice.id, "USD") == 3000


def test_failed_payment_leaves_ledger_untouched(db_session, alice, bob):
    _owe(db_session, bob, alice, 5000)
    settlement = settlement_service.create_settlement(
        db_session, bob.id, schemas.SettlementCreate(items=[_item(alice, 50)])
    )

    failed = settlement_service.confirm_settlement(
        db_session, settlement.id, _confirm(success=False, error="insufficient funds")
    )

    assert failed.status == "FAILED"
    assert failed.failure_reason == "insufficient funds"
    assert get_balance(db_session, bob.id, alice.id, "USD") == 5000
    with pytest.raises(ValidationError):
        settlement_service.confirm_settlement(db_session, settlement.id, _confirm((alice, 50, "USDC")))
    assert get_balance(db_session, bob.id, alice.id, "USD") == 5000


def test_mismatched_transfers_fail_the_settlement(db_session, alice, bob):
    _owe(db_session, bob, alice, 5000)
    settlement = settlement_service.create_settlement(
        db_session, bob.id, schemas.SettlementCreate(items=[_item(alice, 50)])
    )

    with pytest.raises(ExternalConfirmationMismatch):
        settlement_service.confirm_settlement(db_session, settlement.id, _confirm((alice, 40, "USDC")))

    db_session.refresh(settlement)
    assert settlement.status == "FAILED"
    assert "do not match" in settlement.failure_reason
    assert get_balance(db_session, bob.id, alice.id, "USD") == 5000


def test_unknown_settlement(db_session):
    with pytest.raises(NotFoundError):
        settlement_service.confirm_settlement(db_session, 404, _confirm())


def test_pending_settlements_reserve_the_debt(db_session, alice, bob):
    _owe(db_session, bob, alice, 5000)
    first = settlement_service.create_settlement(
        db_session, bob.id, schemas.SettlementCreate(items=[_item(alice, 50)])
    )

    with pytest.raises(ValidationError, match="exceeds"):
        settlement_service.create_settlement(
            db_session, bob.id, schemas.SettlementCreate(items=[_item(alice, 50)])
        )
    with pytest.raises(ValidationError):
        settlement_service.create_settlement(
            db_session, bob.id, schemas.SettlementCreate(items=[_item(alice, 0.01)])
        )

    # A failed payment frees the debt again
    settlement_service.confirm_settlement(db_session, first.id, _confirm(success=False, error="rejected"))
    retry = settlement_service.create_settlement(
        db_session, bob.id, schemas.SettlementCreate(items=[_item(alice, 50)])
    )
    assert retry.status == "PENDING"


def test_group_settlements_reserve_global_debt_too(db_session, alice, bob):
    group = make_group(db_session, alice, [bob])
    _owe(db_session, bob, alice, 3000, group=group)
    _owe(db_session, bob, alice, 2000)

    settlement_service.create_settlement(
        db_session, bob.id, schemas.SettlementCreate(group_id=group.id, items=[_item(alice, 30)])
    )
    with pytest.raises(ValidationError):
        settlement_service.create_settlement(
            db_session, bob.id, schemas.SettlementCreate(group_id=group.id, items=[_item(alice, 1)])
        )
    # 3000 of the 5000 global debt is already promised to the group settlement
    with pytest.raises(ValidationError):
        settlement_service.create_settlement(
            db_session, bob.id, schemas.SettlementCreate(items=[_item(alice, 21)])
        )
    outside = settlement_service.create_settlement(
        db_session, bob.id, schemas.SettlementCreate(items=[_item(alice, 20)])
    )
    assert outside.status == "PENDING"


def test_second_settlement_of_the_same_debt_fails_on_confirmation(db_session, alice, bob):
    _owe(db_session, bob, alice, 5000)
    first = settlement_service.create_settlement(
        db_session, bob.id, schemas.SettlementCreate(items=[_item(alice, 50)])
    )
    # Two concurrent requests can both pass the creation check
    with patch("utils.settlements._reserved", return_value=0):
        second = settlement_service.create_settlement(
            db_session, bob.id, schemas.SettlementCreate(items=[_item(alice, 50)])
        )

    settlement_service.confirm_settlement(db_session, first.id, _confirm((alice, 50, "USDC")))
    with pytest.raises(ValidationError, match="exceeds"):
        settlement_service.confirm_settlement(db_session, second.id, _confirm((alice, 50, "USDC")))

    db_session.refresh(second)
    assert second.status == "FAILED"
    assert "exceeds" in second.failure_reason
    assert second.completed_at is None
    assert get_balance(db_session, bob.id, alice.id, "USD") == 0
    assert get_balance(db_session, alice.id, bob.id, "USD") == 0


def test_confirmation_fails_when_the_debt_was_paid_meanwhile(db_session, alice, bob):
    _owe(db_session, bob, alice, 5000)
    settlement = settlement_service.create_settlement(
        db_session, bob.id, schemas.SettlementCreate(items=[_item(alice, 50)])
    )
    expense_service.record_payment(db_session, bob.id, schemas.PaymentCreate(
        payer_id=bob.id, payee_id=alice.id, amount=30
    ))

    with pytest.raises(ValidationError):
        settlement_service.confirm_settlement(db_session, settlement.id, _confirm((alice, 50, "USDC")))

    db_session.refresh(settlement)
    assert settlement.status == "FAILED"
    assert get_balance(db_session, bob.id, alice.id, "USD") == 2000


def test_group_settlement_plan_and_completion(db_session, alice, bob, charlie):
    group = make_group(db_session, alice, [bob, charlie])
    _owe(db_session, bob, alice, 3000, group=group)
    _owe(db_session, bob, charlie, 1200, group=group)
    _owe(db_session, charlie, bob, 200, group=group)

    plan = settlement_service.plan_group_settlement(db_session, bob.id, group.id)
    assert plan == [
        {"friend_id": alice.id, "amount": 3000, "currency": "USD"},
        {"friend_id": charlie.id, "amount": 1000, "currency": "USD"},
    ]

    settlement = settlement_service.create_settlement(db_session, bob.id, schemas.SettlementCreate(
        group_id=group.id,
        items=[_item(alice, 30), _item(charlie, 10)]
    ))
    settlement_service.confirm_settlement(
        db_session, settlement.id, _confirm((alice, 30, "USDC"), (charlie, 10, "USDC"))
    )

    assert settlement_service.plan_group_settlement(db_session, bob.id, group.id) == []
    assert get_group_balance(db_session, group.id, alice.id, bob.id, "USD") == 0
    assert get_balance(db_session, charlie.id, bob.id, "USD") == 0


def test_settlement_api_flow(client, db_session, alice, bob):
    group = make_group(db_session, alice, [bob])
    _owe(db_session, bob, alice, 2500, group=group)

    plan = client.get(f"/groups/{group.id}/settlement-plan", headers=headers_for(bob)).json()
    assert plan == [{"friend_id": alice.id, "amount": 25.0, "currency": "USD"}]

    response = client.post("/settlements", headers=headers_for(bob), json={
        "group_id": group.id,
        "chain_id": "stellar",
        "items": [{
            "friend_id": alice.id,
            "original_amount": 25,
            "original_currency": "USD",
            "amount": 25,
            "currency": "USDC"
        }]
    })
    assert response.status_code == 200
    settlement_id = response.json()["id"]

    response = client.post(f"/settlements/{settlement_id}/confirm", headers=service_headers(), json={
        "success": True,
        "transaction_hash": "0xdef",
        "transfers": [{"friend_id": alice.id, "amount": 25, "currency": "USDC"}]
    })
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "COMPLETED"
    assert data["items"][0]["after_settlement_balance"] == 0.0

    listed = client.get("/settlements", headers=headers_for(alice)).json()
    assert [s["id"] for s in listed] == [settlement_id]
    assert client.get(f"/settlements/{settlement_id}", headers=headers_for(alice)).status_code == 200


def test_settlement_mismatch_api_returns_conflict(client, db_session, alice, bob):
    _owe(db_session, bob, alice, 2500)
    settlement_id = client.post("/settlements", headers=headers_for(bob), json={
        "items": [{
            "friend_id": alice.id,
            "original_amount": 25,
            "original_currency": "USD",
            "amount": 25,
            "currency": "USDC"
        }]
    }).json()["id"]

    response = client.post(f"/settlements/{settlement_id}/confirm", headers=service_headers(), json={
        "success": True,
        "transfers": [{"friend_id": alice.id, "amount": 20, "currency": "USDC"}]
    })
    assert response.status_code == 409
    assert client.get(f"/settlements/{settlement_id}", headers=headers_for(bob)).json()["status"] == "FAILED"


def test_only_the_payment_service_confirms(client, db_session, alice, bob):
    _owe(db_session, bob, alice, 2500)
    settlement_id = client.post("/settlements", headers=headers_for(bob), json={
        "items": [{
            "friend_id": alice.id,
            "original_amount": 25,
            "original_currency": "USD",
            "amount": 25,
            "currency": "USDC"
        }]
    }).json()["id"]
    confirmation = {
        "success": True,
        "transfers": [{"friend_id": alice.id, "amount": 25, "currency": "USDC"}]
    }

    for headers in (headers_for(bob), headers_for(alice), {"Authorization": "Bearer not-a-token"}):
        response = client.post(f"/settlements/{settlement_id}/confirm", headers=headers, json=confirmation)
        assert response.status_code == 403

    assert client.get(f"/settlements/{settlement_id}", headers=headers_for(bob)).json()["status"] == "PENDING"
    assert get_balance(db_session, bob.id, alice.id, "USD") == 2500

    response = client.post(f"/settlements/{settlement_id}/confirm", headers=service_headers(), json=confirmation)
    assert response.status_code == 200
    assert get_balance(db_session, bob.id, alice.id, "USD") == 0
