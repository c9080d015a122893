import pytest
from unittest.mock import patch
from sqlalchemy.exc import OperationalError

import models
import schemas
from conftest import headers_for, make_group, make_user
from utils import expenses as expense_service
from utils.errors import NotFoundError, TransactionFailure, UnauthorizedError, ValidationError
from utils.ledger import get_balance, get_group_balance


def _expense(payer, participants, amount, group=None, currency="USD", split_type="EXACT", **extra):
    return schemas.ExpenseCreate(
        description="Dinner",
        amount=amount,
        currency=currency,
        split_type=split_type,
        payer_id=payer.id,
        group_id=group.id if group else None,
        participants=[schemas.ParticipantShare(user_id=u.id, amount=a) for u, a in participants],
        **extra
    )


def _update(payer, participants, amount, currency="USD"):
    return schemas.ExpenseUpdate(
        description="Dinner (edited)",
        amount=amount,
        currency=currency,
        split_type="EXACT",
        payer_id=payer.id,
        participants=[schemas.ParticipantShare(user_id=u.id, amount=a) for u, a in participants],
    )


def test_create_expense_updates_ledger(db_session, alice, bob):
    expense = expense_service.create_expense(
        db_session, alice.id, _expense(alice, [(alice, 50), (bob, 50)], 100, split_type="EQUAL")
    )

    assert expense.amount == 10000
    assert get_balance(db_session, alice.id, bob.id, "USD") == -5000
    assert get_balance(db_session, bob.id, alice.id, "USD") == 5000
    stored = {p.user_id: p.amount for p in expense_service.get_participants(db_session, expense.id)}
    assert stored == {alice.id: 5000, bob.id: 5000}


def test_create_group_expense(db_session, alice, bob, charlie):
    group = make_group(db_session, alice, [bob, charlie])
    expense_service.create_expense(
        db_session, bob.id, _expense(alice, [(alice, 30), (bob, 30), (charlie, 30)], 90, group)
    )

    assert get_group_balance(db_session, group.id, alice.id, bob.id, "USD") == -3000
    assert get_group_balance(db_session, group.id, charlie.id, alice.id, "USD") == 3000
    assert get_balance(db_session, alice.id, charlie.id, "USD") == -3000


def test_amounts_are_rounded_once_to_minor_units(db_session, alice, bob):
    expense = expense_service.create_expense(
        db_session, alice.id, _expense(alice, [(alice, "3.335"), (bob, "6.665")], 10)
    )

    shares = {p.user_id: p.amount for p in expense_service.get_participants(db_session, expense.id)}
    assert shares == {alice.id: 334, bob.id: 667}
    assert get_balance(db_session, bob.id, alice.id, "USD") == 667


def test_split_sum_tolerance_is_one_minor_unit(db_session, alice, bob, charlie):
    # 33.33 * 3 = 99.99 against 100.00
    expense_service.create_expense(
        db_session, alice.id, _expense(alice, [(alice, "33.33"), (bob, "33.33"), (charlie, "33.33")], 100)
    )

    with pytest.raises(ValidationError):
        expense_service.create_expense(
            db_session, alice.id, _expense(alice, [(alice, "33.33"), (bob, "33.33"), (charlie, "33.32")], 100)
        )


@pytest.mark.parametrize("participants, amount", [
    ([], 100),
    ([("bob", 50), ("bob", 50)], 100),
    ([("alice", 150), ("bob", -50)], 100),
    ([("alice", 0), ("bob", 0)], 0),
    ([("alice", 50), ("bob", 40)], 100),
])
def test_invalid_splits_write_nothing(db_session, alice, bob, participants, amount):
    users = {"alice": alice, "bob": bob}
    data = _expense(alice, [(users[name], a) for name, a in participants], amount)

    with pytest.raises(ValidationError):
        expense_service.create_expense(db_session, alice.id, data)

    assert db_session.query(models.Expense).count() == 0
    assert db_session.query(models.Balance).count() == 0


def test_unknown_participant_is_rejected(db_session, alice):
    data = schemas.ExpenseCreate(
        description="Ghost", amount=10, payer_id=alice.id,
        participants=[schemas.ParticipantShare(user_id=9999, amount=10)]
    )

    with pytest.raises(ValidationError):
        expense_service.create_expense(db_session, alice.id, data)


def test_group_expense_requires_members(db_session, alice, bob, charlie):
    group = make_group(db_session, alice, [bob])

    with pytest.raises(ValidationError):
        expense_service.create_expense(
            db_session, alice.id, _expense(alice, [(alice, 50), (charlie, 50)], 100, group)
        )


def test_unknown_group_is_not_found(db_session, alice, bob):
    data = _expense(alice, [(bob, 10)], 10)
    data.group_id = 4242

    with pytest.raises(NotFoundError):
        expense_service.create_expense(db_session, alice.id, data)


def test_missing_actor_is_unauthorized(db_session, alice, bob):
    with pytest.raises(UnauthorizedError):
        expense_service.create_expense(db_session, None, _expense(alice, [(bob, 10)], 10))


def test_outsider_cannot_add_non_group_expense(db_session, alice, bob, charlie):
    with pytest.raises(UnauthorizedError):
        expense_service.create_expense(db_session, charlie.id, _expense(alice, [(alice, 5), (bob, 5)], 10))


def test_edit_drops_participant(db_session, alice, bob, charlie):
    group = make_group(db_session, alice, [bob, charlie])
    expense = expense_service.create_expense(
        db_session, alice.id, _expense(alice, [(alice, 30), (bob, 30), (charlie, 30)], 90, group)
    )

    expense_service.edit_expense(db_session, alice.id, expense.id, _update(alice, [(alice, 45), (bob, 45)], 90))

    assert get_group_balance(db_session, group.id, charlie.id, alice.id, "USD") == 0
    assert get_group_balance(db_session, group.id, alice.id, bob.id, "USD") == -4500
    assert get_balance(db_session, alice.id, bob.id, "USD") == -4500
    stored = {p.user_id for p in expense_service.get_participants(db_session, expense.id)}
    assert stored == {alice.id, bob.id}


def test_edit_changes_payer_and_currency(db_session, alice, bob):
    expense = expense_service.create_expense(db_session, alice.id, _expense(alice, [(alice, 50), (bob, 50)], 100))

    edited = expense_service.edit_expense(
        db_session, alice.id, expense.id, _update(bob, [(alice, 20), (bob, 20)], 40, currency="EUR")
    )

    assert edited.currency == "EUR"
    assert edited.updated_by_id == alice.id
    assert get_balance(db_session, alice.id, bob.id, "USD") == 0
    assert get_balance(db_session, alice.id, bob.id, "EUR") == 2000


def test_delete_restores_ledger(db_session, alice, bob):
    expense = expense_service.create_expense(db_session, alice.id, _expense(alice, [(alice, 50), (bob, 50)], 100))

    deleted = expense_service.delete_expense(db_session, bob.id, expense.id)

    assert deleted.deleted_at is not None
    assert deleted.deleted_by_id == bob.id
    assert get_balance(db_session, alice.id, bob.id, "USD") == 0
    assert get_balance(db_session, bob.id, alice.id, "USD") == 0
    # Participant rows survive for history
    assert len(expense_service.get_participants(db_session, expense.id)) == 2


def test_deleted_expense_cannot_be_deleted_or_edited_again(db_session, alice, bob):
    expense = expense_service.create_expense(db_session, alice.id, _expense(alice, [(bob, 10)], 10))
    expense_service.delete_expense(db_session, alice.id, expense.id)

    with pytest.raises(NotFoundError):
        expense_service.delete_expense(db_session, alice.id, expense.id)
    with pytest.raises(NotFoundError):
        expense_service.edit_expense(db_session, alice.id, expense.id, _update(alice, [(bob, 10)], 10))
    assert get_balance(db_session, bob.id, alice.id, "USD") == 0


def test_record_payment_settles_pair(db_session, alice, bob):
    group = make_group(db_session, alice, [bob])
    expense_service.create_expense(db_session, alice.id, _expense(alice, [(alice, 50), (bob, 50)], 100, group))

    payment = expense_service.record_payment(db_session, bob.id, schemas.PaymentCreate(
        payer_id=bob.id, payee_id=alice.id, amount=50
    ))

    assert payment.split_type == "SETTLEMENT"
    assert get_balance(db_session, bob.id, alice.id, "USD") == 0
    # Paid outside the group: reconciliation zeroes the group rows
    assert get_group_balance(db_session, group.id, bob.id, alice.id, "USD") == 0
    assert get_group_balance(db_session, group.id, alice.id, bob.id, "USD") == 0


def test_record_payment_to_self_is_rejected(db_session, alice):
    with pytest.raises(ValidationError):
        expense_service.record_payment(db_session, alice.id, schemas.PaymentCreate(
            payer_id=alice.id, payee_id=alice.id, amount=10
        ))


def test_time_lock_in_records_rate_for_tokens(db_session, alice, bob):
    data = _expense(alice, [(bob, 10)], 10, currency="XLM", currency_type="TOKEN", time_lock_in=True)

    with patch("utils.expenses.get_exchange_rate", return_value=0.12) as mock_rate:
        expense = expense_service.create_expense(db_session, alice.id, data)

    mock_rate.assert_called_once_with("XLM", "USD")
    assert expense.exchange_rate == 0.12
    assert expense.amount == 100000000
    assert get_balance(db_session, bob.id, alice.id, "XLM") == 100000000


def test_store_failure_applies_nothing(db_session, alice, bob):
    with patch("utils.expenses.apply_split", side_effect=OperationalError("INSERT", {}, Exception("locked"))):
        with pytest.raises(TransactionFailure):
            expense_service.create_expense(db_session, alice.id, _expense(alice, [(alice, 50), (bob, 50)], 100))

    assert db_session.query(models.Expense).count() == 0
    assert db_session.query(models.ExpenseParticipant).count() == 0
    assert get_balance(db_session, bob.id, alice.id, "USD") == 0


def test_create_expense_api(client, db_session, test_user, auth_headers):
    other = make_user(db_session, "other@example.com", "Other")
    payload = {
        "description": "Lunch",
        "amount": 20,
        "currency": "usd",
        "payer_id": test_user.id,
        "split_type": "EQUAL",
        "participants": [
            {"user_id": test_user.id, "amount": 10},
            {"user_id": other.id, "amount": 10}
        ]
    }
    response = client.post("/expenses", headers=auth_headers, json=payload)
    assert response.status_code == 200
    data = response.json()
    assert data["amount"] == 20.0
    assert data["currency"] == "USD"

    details = client.get(f"/expenses/{data['id']}", headers=auth_headers).json()
    shares = {p["user_id"]: p["amount"] for p in details["participants"]}
    assert shares == {test_user.id: 10.0, other.id: 10.0}

    listed = client.get("/expenses", headers=headers_for(other)).json()
    assert [e["id"] for e in listed] == [data["id"]]


def test_create_expense_api_validation_error(client, test_user, auth_headers):
    payload = {
        "description": "Lunch",
        "amount": 20,
        "payer_id": test_user.id,
        "participants": [{"user_id": test_user.id, "amount": 5}]
    }
    response = client.post("/expenses", headers=auth_headers, json=payload)
    assert response.status_code == 400
    assert "do not sum" in response.json()["detail"]


def test_create_expense_api_rejects_huge_amount(client, db_session, test_user, auth_headers):
    other = make_user(db_session, "other@example.com")
    response = client.post("/expenses", headers=auth_headers, json={
        "description": "Yacht",
        "amount": 1e20,
        "payer_id": test_user.id,
        "participants": [{"user_id": other.id, "amount": 1e20}]
    })
    assert response.status_code == 400
    assert "too large" in response.json()["detail"]
    assert db_session.query(models.Expense).count() == 0


def test_expense_api_requires_auth(client):
    response = client.get("/expenses")
    assert response.status_code == 401


def test_update_and_delete_expense_api(client, db_session, test_user, auth_headers):
    other = make_user(db_session, "other@example.com", "Other")
    created = client.post("/expenses", headers=auth_headers, json={
        "description": "Taxi",
        "amount": 30,
        "payer_id": test_user.id,
        "participants": [{"user_id": other.id, "amount": 30}]
    }).json()

    response = client.put(f"/expenses/{created['id']}", headers=auth_headers, json={
        "description": "Taxi home",
        "amount": 40,
        "payer_id": test_user.id,
        "split_type": "EXACT",
        "participants": [{"user_id": other.id, "amount": 40}]
    })
    assert response.status_code == 200
    assert response.json()["amount"] == 40.0
    assert get_balance(db_session, other.id, test_user.id, "USD") == 4000

    response = client.delete(f"/expenses/{created['id']}", headers=auth_headers)
    assert response.status_code == 200
    assert get_balance(db_session, other.id, test_user.id, "USD") == 0

    response = client.get(f"/expenses/{created['id']}", headers=auth_headers)
    assert response.status_code == 404


def test_stranger_cannot_read_expense(client, db_session, test_user, auth_headers):
    other = make_user(db_session, "other@example.com")
    stranger = make_user(db_session, "stranger@example.com")
    created = client.post("/expenses", headers=auth_headers, json={
        "description": "Taxi",
        "amount": 30,
        "payer_id": test_user.id,
        "participants": [{"user_id": other.id, "amount": 30}]
    }).json()

    response = client.get(f"/expenses/{created['id']}", headers=headers_for(stranger))
    assert response.status_code == 403


def test_record_payment_api(client, db_session, test_user, auth_headers):
    other = make_user(db_session, "other@example.com")
    client.post("/expenses", headers=auth_headers, json={
        "description": "Tickets",
        "amount": 25,
        "payer_id": test_user.id,
        "participants": [{"user_id": other.id, "amount": 25}]
    })

    response = client.post("/payments", headers=headers_for(other), json={
        "payer_id": other.id, "payee_id": test_user.id, "amount": 25
    })
    assert response.status_code == 200
    assert get_balance(db_session, other.id, test_user.id, "USD") == 0


def test_group_expenses_api(client, db_session, test_user, auth_headers):
    other = make_user(db_session, "other@example.com")
    group = make_group(db_session, test_user, [other])
    client.post("/expenses", headers=auth_headers, json={
        "description": "Groceries",
        "amount": 12,
        "payer_id": test_user.id,
        "group_id": group.id,
        "participants": [{"user_id": test_user.id, "amount": 6}, {"user_id": other.id, "amount": 6}]
    })

    response = client.get(f"/groups/{group.id}/expenses", headers=headers_for(other))
    assert response.status_code == 200
    assert [e["description"] for e in response.json()] == ["Groceries"]

    stranger = make_user(db_session, "stranger@example.com")
    response = client.get(f"/groups/{group.id}/expenses", headers=headers_for(stranger))
    assert response.status_code == 403
