"""Paid enrollment.

The sequence is: check the class is approved, confirm the payment with the
provider, record the payment once per provider payment id, then add the
student to the class with $addToSet. Each step is safe to repeat, so a
retried confirmation converges on one payment record and one enrollment.
Nothing is written before the provider has confirmed the payment.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import oid
from errors import (
    ClassNotAvailableError,
    ConflictError,
    DatabaseError,
    PaymentNotSuccessfulError,
    ResourceNotFoundError,
)
from payments import SUCCEEDED, PaymentGateway
from schemas import CLASSES, PAYMENTS, Payment, utcnow

logger = logging.getLogger(__name__)


@dataclass
class EnrollmentRequest:
    transaction_id: str
    class_id: str
    student_uid: str
    amount: float
    student_name: str = ""
    student_email: str = ""
    payment_method_id: Optional[str] = None
    source: str = "direct_enrollment"


@dataclass
class EnrollmentResult:
    already_enrolled: bool
    payment_id: Optional[str] = None
    created_payment: bool = False


def confirm_payment(gateway: PaymentGateway, payment_intent_id: str) -> None:
    status = gateway.retrieve_status(payment_intent_id)
    if status != SUCCEEDED:
        logger.warning(
            f"Payment intent in state {status!r}, refusing enrollment", extra={"payment_id": payment_intent_id}
        )
        raise PaymentNotSuccessfulError(payment_intent_id, status)


def load_enrollable_class(db: Database, class_id: str) -> Dict[str, Any]:
    class_doc = db[CLASSES].find_one({"_id": oid(class_id, "class ID")})
    if not class_doc:
        raise ResourceNotFoundError("Class")
    if class_doc.get("status") != "approved":
        raise ClassNotAvailableError(class_id)
    return class_doc


def find_payment(db: Database, transaction_id: str) -> Optional[Dict[str, Any]]:
    return db[PAYMENTS].find_one(
        {"$or": [{"transactionId": transaction_id}, {"stripePaymentIntentId": transaction_id}]}
    )


def reuse_payment(existing: Dict[str, Any], req: EnrollmentRequest) -> str:
    # a payment pays for exactly one (class, student) enrollment
    if existing.get("classId") != req.class_id or existing.get("studentUid") != req.student_uid:
        logger.warning(
            "Payment already recorded for another enrollment",
            extra={"payment_id": req.transaction_id, "class_id": req.class_id, "student_uid": req.student_uid},
        )
        raise ConflictError("Payment already used for another enrollment")
    return str(existing["_id"])


def record_payment(db: Database, req: EnrollmentRequest) -> Tuple[Optional[str], bool]:
    """Insert the payment record unless one exists for this transaction.

    Returns (payment_id, created). A record already held by a different class
    or student raises ConflictError.
    """
    existing = find_payment(db, req.transaction_id)
    if existing:
        return reuse_payment(existing, req), False
    doc = Payment(
        transactionId=req.transaction_id,
        stripePaymentIntentId=req.transaction_id if req.source == "direct_enrollment" else None,
        classId=req.class_id,
        studentUid=req.student_uid,
        studentName=req.student_name,
        studentEmail=req.student_email,
        amount=req.amount,
        paymentMethodId=req.payment_method_id,
        source=req.source,
    ).model_dump()
    try:
        res = db[PAYMENTS].insert_one(doc)
    except DuplicateKeyError:
        # lost the race against a concurrent confirmation of the same payment
        existing = find_payment(db, req.transaction_id)
        return (reuse_payment(existing, req) if existing else None), False
    return str(res.inserted_id), True


def add_student(db: Database, class_id: str, student_uid: str) -> None:
    db[CLASSES].update_one(
        {"_id": oid(class_id, "class ID")},
        {"$addToSet": {"enrolledStudents": student_uid}, "$set": {"updatedAt": utcnow()}},
    )


def enroll(db: Database, req: EnrollmentRequest, class_doc: Dict[str, Any]) -> EnrollmentResult:
    if req.student_uid in (class_doc.get("enrolledStudents") or []):
        logger.info(
            "Student already enrolled", extra={"class_id": req.class_id, "student_uid": req.student_uid}
        )
        return EnrollmentResult(already_enrolled=True)
    try:
        payment_id, created = record_payment(db, req)
        add_student(db, req.class_id, req.student_uid)
    except PyMongoError:
        logger.error("Enrollment write failed", exc_info=True, extra={"class_id": req.class_id})
        raise DatabaseError("enroll")
    logger.info(
        "Student enrolled",
        extra={"class_id": req.class_id, "student_uid": req.student_uid, "payment_id": req.transaction_id},
    )
    return EnrollmentResult(already_enrolled=False, payment_id=payment_id, created_payment=created)


def process_enrollment(db: Database, gateway: PaymentGateway, req: EnrollmentRequest) -> EnrollmentResult:
    # class availability is a read; it is settled before the provider is asked
    class_doc = load_enrollable_class(db, req.class_id)
    confirm_payment(gateway, req.transaction_id)
    return enroll(db, req, class_doc)


def record_payment_enrollment(db: Database, req: EnrollmentRequest) -> EnrollmentResult:
    """Enrollment for a client-reported checkout transaction, without provider confirmation."""
    return enroll(db, req, load_enrollable_class(db, req.class_id))
