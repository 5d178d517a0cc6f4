"""Paid enrollment: provider confirmation, idempotent payment record, $addToSet enrollment.

Invariants:
    - Same payment id confirmed twice → one payment record, student enrolled once
    - Unconfirmed payment → 400 and no writes at all
    - Non-approved class → not available, whatever the payment state
    - Provider outage → 502, no writes
    - A payment id already recorded for another class or student → 409, no enrollment
"""
import pytest
from bson import ObjectId

import enrollment
from enrollment import EnrollmentRequest, process_enrollment, record_payment_enrollment
from errors import ClassNotAvailableError, PaymentNotSuccessfulError, PaymentProviderError, ResourceNotFoundError
from schemas import CLASSES, PAYMENTS


def confirm(client, headers, class_id, intent="pi_1", student="s-1", amount=49):
    body = {
        "paymentIntentId": intent,
        "classId": class_id,
        "studentUid": student,
        "studentName": "Sam",
        "studentEmail": "sam@example.com",
        "amount": amount,
    }
    return client.post("/process-enrollment", json=body, headers=headers)


def enrolled(db, class_id):
    return db[CLASSES].find_one({"_id": ObjectId(class_id)})["enrolledStudents"]


def test_confirmation_records_payment_and_enrolls(client, db, make_class, auth_headers):
    class_id = make_class()
    res = confirm(client, auth_headers, class_id)
    assert res.status_code == 200
    assert res.json() == {
        "success": True,
        "message": "Enrollment completed successfully",
        "paymentIntentId": "pi_1",
    }
    payment = db[PAYMENTS].find_one({"transactionId": "pi_1"})
    assert payment["stripePaymentIntentId"] == "pi_1"
    assert payment["status"] == "completed"
    assert payment["source"] == "direct_enrollment"
    assert payment["amount"] == 49.0
    assert enrolled(db, class_id) == ["s-1"]


def test_repeated_confirmation_is_idempotent(client, db, make_class, auth_headers):
    class_id = make_class()
    first = confirm(client, auth_headers, class_id)
    second = confirm(client, auth_headers, class_id)
    assert first.status_code == second.status_code == 200
    assert second.json()["message"] == "Student is already enrolled in this class"
    assert db[PAYMENTS].count_documents({"transactionId": "pi_1"}) == 1
    assert enrolled(db, class_id) == ["s-1"]


def test_retry_after_partial_failure_reuses_payment(client, db, make_class, auth_headers):
    class_id = make_class()
    # payment recorded by an earlier attempt that never reached the enrollment step
    db[PAYMENTS].insert_one({"transactionId": "pi_1", "classId": class_id, "studentUid": "s-1"})
    res = confirm(client, auth_headers, class_id)
    assert res.status_code == 200
    assert db[PAYMENTS].count_documents({}) == 1
    assert enrolled(db, class_id) == ["s-1"]


def test_confirmed_intent_cannot_pay_for_another_class(client, db, make_class, auth_headers):
    cheap = make_class(title="cheap", price=1)
    pricey = make_class(title="pricey", price=999)
    assert confirm(client, auth_headers, cheap, intent="pi_once", amount=1).status_code == 200
    res = confirm(client, auth_headers, pricey, intent="pi_once", amount=999)
    assert res.status_code == 409
    assert res.json()["code"] == "CONFLICT"
    assert enrolled(db, pricey) == []
    assert db[PAYMENTS].count_documents({}) == 1


def test_confirmed_intent_cannot_enroll_another_student(client, db, make_class, auth_headers):
    class_id = make_class()
    confirm(client, auth_headers, class_id, intent="pi_x", student="s-1")
    res = confirm(client, auth_headers, class_id, intent="pi_x", student="s-2")
    assert res.status_code == 409
    assert enrolled(db, class_id) == ["s-1"]


def test_unsuccessful_payment_makes_no_writes(client, db, gateway, make_class, auth_headers):
    class_id = make_class()
    gateway.statuses["pi_1"] = "requires_payment_method"
    res = confirm(client, auth_headers, class_id)
    assert res.status_code == 400
    assert res.json()["message"] == "Payment was not successful"
    assert db[PAYMENTS].count_documents({}) == 0
    assert enrolled(db, class_id) == []


def test_provider_outage_is_502(client, db, gateway, make_class, auth_headers):
    class_id = make_class()
    gateway.fail_with = PaymentProviderError("Unable to verify payment", "retrieve")
    res = confirm(client, auth_headers, class_id)
    assert res.status_code == 502
    assert res.json()["message"] == "Unable to verify payment"
    assert db[PAYMENTS].count_documents({}) == 0


def test_pending_class_not_available(client, db, make_class, auth_headers):
    class_id = make_class(status="pending")
    res = confirm(client, auth_headers, class_id)
    assert res.status_code == 400
    assert res.json()["message"] == "Class is not available for enrollment"
    assert db[PAYMENTS].count_documents({}) == 0


@pytest.mark.parametrize("provider_status", ["succeeded", "canceled", "requires_payment_method"])
def test_pending_class_not_available_whatever_payment_state(
    client, gateway, make_class, auth_headers, provider_status
):
    class_id = make_class(status="pending")
    gateway.statuses["pi_1"] = provider_status
    res = confirm(client, auth_headers, class_id)
    assert res.status_code == 400
    assert res.json()["code"] == "CLASS_NOT_AVAILABLE"
    assert gateway.retrieved == []


def test_unknown_class_is_404(client, auth_headers):
    res = confirm(client, auth_headers, str(ObjectId()))
    assert res.status_code == 404


def test_missing_fields_are_listed(client, auth_headers):
    res = client.post("/process-enrollment", json={"classId": "x"}, headers=auth_headers)
    assert res.status_code == 400
    assert res.json()["message"] == "Missing required fields: paymentIntentId, studentUid, amount"


def test_second_student_same_class(client, db, make_class, auth_headers):
    class_id = make_class()
    confirm(client, auth_headers, class_id, intent="pi_a", student="s-a")
    confirm(client, auth_headers, class_id, intent="pi_b", student="s-b")
    assert enrolled(db, class_id) == ["s-a", "s-b"]
    assert db[PAYMENTS].count_documents({}) == 2


# ----------------------
# /payments
# ----------------------
def checkout(client, headers, class_id, transaction="txn_1", student="s-1"):
    body = {
        "classId": class_id,
        "studentUid": student,
        "studentName": "Sam",
        "studentEmail": "sam@example.com",
        "amount": "49.00",
        "paymentMethodId": "pm_card",
        "transactionId": transaction,
    }
    return client.post("/payments", json=body, headers=headers)


def test_checkout_payment_enrolls(client, db, gateway, make_class, auth_headers):
    class_id = make_class()
    res = checkout(client, auth_headers, class_id)
    assert res.status_code == 201
    assert res.json()["transactionId"] == "txn_1"
    assert res.json()["paymentId"]
    payment = db[PAYMENTS].find_one({"transactionId": "txn_1"})
    assert payment["source"] == "checkout"
    assert payment["paymentMethodId"] == "pm_card"
    assert enrolled(db, class_id) == ["s-1"]
    assert gateway.retrieved == []


def test_checkout_twice_converges(client, db, make_class, auth_headers):
    class_id = make_class()
    checkout(client, auth_headers, class_id)
    res = checkout(client, auth_headers, class_id)
    assert res.status_code == 200
    assert db[PAYMENTS].count_documents({}) == 1
    assert enrolled(db, class_id) == ["s-1"]


def test_repeat_checkout_answers_already_enrolled_not_conflict(client, db, make_class, auth_headers):
    class_id = make_class()
    assert checkout(client, auth_headers, class_id).status_code == 201
    res = checkout(client, auth_headers, class_id, transaction="txn_2")
    assert res.status_code == 200
    assert res.json()["success"] is True
    assert res.json()["message"] == "Student is already enrolled in this class"
    assert db[PAYMENTS].count_documents({}) == 1


def test_checkout_transaction_cannot_pay_for_another_class(client, db, make_class, auth_headers):
    cheap = make_class(title="cheap", price=1)
    pricey = make_class(title="pricey", price=999)
    assert checkout(client, auth_headers, cheap, transaction="txn_once").status_code == 201
    res = checkout(client, auth_headers, pricey, transaction="txn_once")
    assert res.status_code == 409
    assert res.json()["message"] == "Payment already used for another enrollment"
    assert enrolled(db, pricey) == []
    assert db[PAYMENTS].count_documents({}) == 1


def test_checkout_transaction_cannot_enroll_another_student(client, db, make_class, auth_headers):
    class_id = make_class()
    checkout(client, auth_headers, class_id, transaction="txn_x", student="s-1")
    res = checkout(client, auth_headers, class_id, transaction="txn_x", student="s-2")
    assert res.status_code == 409
    assert enrolled(db, class_id) == ["s-1"]


def test_checkout_rejected_for_unapproved_class(client, db, make_class, auth_headers):
    class_id = make_class(status="rejected")
    res = checkout(client, auth_headers, class_id)
    assert res.status_code == 400
    assert db[PAYMENTS].count_documents({}) == 0


# ----------------------
# Payment intents & history
# ----------------------
def test_create_payment_intent(client, gateway, auth_headers):
    res = client.post(
        "/create-payment-intent",
        json={"amount": 12.5, "classId": "c-1", "studentUid": "s-1"},
        headers=auth_headers,
    )
    assert res.status_code == 200
    assert res.json() == {"success": True, "clientSecret": "pi_test_1_secret", "paymentIntentId": "pi_test_1"}
    assert gateway.created == [{"amount": 12.5, "currency": "usd", "metadata": {"classId": "c-1", "studentUid": "s-1"}}]


def test_create_payment_intent_provider_failure(client, gateway, auth_headers):
    gateway.fail_with = PaymentProviderError("Failed to create payment intent", "create_intent")
    res = client.post(
        "/create-payment-intent",
        json={"amount": 12.5, "classId": "c-1", "studentUid": "s-1"},
        headers=auth_headers,
    )
    assert res.status_code == 502
    assert res.json()["success"] is False


def test_enrolled_classes_and_payment_history(client, make_class, auth_headers):
    approved = make_class(title="Joined")
    make_class(title="Other")
    confirm(client, auth_headers, approved, student="s-9")

    classes = client.get("/students/s-9/enrolled-classes", headers=auth_headers).json()["classes"]
    assert [c["title"] for c in classes] == ["Joined"]

    payments = client.get("/students/s-9/payments", headers=auth_headers).json()["payments"]
    assert [p["transactionId"] for p in payments] == ["pi_1"]


# ----------------------
# Workflow functions
# ----------------------
def request(class_id, **overrides):
    fields = {"transaction_id": "pi_1", "class_id": class_id, "student_uid": "s-1", "amount": 10.0}
    fields.update(overrides)
    return EnrollmentRequest(**fields)


def test_process_enrollment_result(db, gateway, make_class):
    class_id = make_class()
    result = process_enrollment(db, gateway, request(class_id))
    assert result.already_enrolled is False
    assert result.created_payment is True
    assert result.payment_id

    again = process_enrollment(db, gateway, request(class_id))
    assert again.already_enrolled is True
    assert again.payment_id is None


def test_process_enrollment_unconfirmed_payment(db, gateway, make_class):
    class_id = make_class()
    gateway.statuses["pi_1"] = "processing"
    with pytest.raises(PaymentNotSuccessfulError) as exc:
        process_enrollment(db, gateway, request(class_id))
    assert exc.value.provider_status == "processing"
    assert db[PAYMENTS].count_documents({}) == 0


def test_enroll_missing_class(db):
    with pytest.raises(ResourceNotFoundError):
        record_payment_enrollment(db, request(str(ObjectId())))


def test_enroll_unapproved_class(db, make_class):
    with pytest.raises(ClassNotAvailableError):
        record_payment_enrollment(db, request(make_class(status="pending")))


def test_record_payment_survives_duplicate_key_race(db, make_class, monkeypatch):
    class_id = make_class()
    db[PAYMENTS].insert_one({"transactionId": "pi_1", "classId": class_id, "studentUid": "s-1"})
    real_find = enrollment.find_payment
    calls = []

    def stale_then_real(database, transaction_id):
        # first lookup misses as if a concurrent request inserted in between
        calls.append(transaction_id)
        if len(calls) == 1:
            return None
        return real_find(database, transaction_id)

    monkeypatch.setattr(enrollment, "find_payment", stale_then_real)
    payment_id, created = enrollment.record_payment(db, request(class_id))
    assert created is False
    assert payment_id == str(db[PAYMENTS].find_one({"transactionId": "pi_1"})["_id"])
    assert db[PAYMENTS].count_documents({}) == 1
