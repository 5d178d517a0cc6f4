import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated, Any, Dict, Literal, Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, EmailStr, Field, StrictInt, field_validator
from pymongo.database import Database
from pymongo.errors import PyMongoError

import config
from auth import TokenVerifier, get_verifier, require_claims
from database import connect, create_document, ensure_indexes, get_db, get_documents, oid, serialize_doc
from enrollment import EnrollmentRequest, process_enrollment, record_payment_enrollment
from errors import ConflictError, ResourceNotFoundError, register_error_handlers
from observability import setup_logging
from payments import PaymentGateway, get_payment_gateway
from schemas import (
    ASSIGNMENTS,
    CLASSES,
    PAYMENTS,
    SUBMISSIONS,
    TEACHER_APPLICATIONS,
    TEACHING_EVALUATIONS,
    USERS,
    Assignment,
    Class,
    ClassStatus,
    Role,
    Submission,
    TeacherApplication,
    TeachingEvaluation,
    User,
    utcnow,
)

logger = logging.getLogger(__name__)

POPULAR_CLASSES_LIMIT = 6
FALLBACK_CLASS_TITLE = "EduManage Course"


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(config.LOG_LEVEL, config.LOG_FORMAT)
    client, db = connect(config.DATABASE_URL, config.DATABASE_NAME)
    app.state.db = db
    try:
        ensure_indexes(db)
    except PyMongoError:
        # the API still serves reads; duplicate checks fall back to the pre-insert lookups
        logger.warning("Could not create indexes", exc_info=True)
    logger.info("EduManage API started")
    yield
    client.close()
    logger.info("EduManage API shutting down")


app = FastAPI(title="EduManage API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)


# ----------------------
# Request models
# ----------------------
RequiredStr = Annotated[str, Field(min_length=1)]


class TokenRequest(BaseModel):
    email: EmailStr


class UserCreate(BaseModel):
    uid: RequiredStr
    name: RequiredStr
    email: EmailStr
    photoURL: Optional[str] = None


class RoleUpdate(BaseModel):
    role: Role


class TeacherApplicationCreate(BaseModel):
    uid: RequiredStr
    name: RequiredStr
    email: EmailStr
    photoURL: Optional[str] = None
    title: RequiredStr
    experience: RequiredStr
    category: RequiredStr


class ApplicationReview(BaseModel):
    status: Literal["approved", "rejected"]


class ClassCreate(BaseModel):
    title: RequiredStr
    teacherName: Optional[str] = None
    teacherEmail: Optional[str] = None
    teacherUid: RequiredStr
    price: float = Field(..., ge=0)
    description: Optional[str] = None
    image: Optional[str] = None


class ClassStatusUpdate(BaseModel):
    status: ClassStatus


class ClassContentUpdate(BaseModel):
    title: RequiredStr
    price: float = Field(..., ge=0)
    description: RequiredStr
    image: RequiredStr


class PaymentCreate(BaseModel):
    classId: RequiredStr
    studentUid: RequiredStr
    studentName: Optional[str] = None
    studentEmail: Optional[str] = None
    amount: float = Field(..., gt=0)
    paymentMethodId: Optional[str] = None
    transactionId: RequiredStr


class PaymentIntentCreate(BaseModel):
    amount: float = Field(..., gt=0)
    currency: str = config.PAYMENT_CURRENCY
    classId: RequiredStr
    studentUid: RequiredStr


class EnrollmentConfirm(BaseModel):
    paymentIntentId: RequiredStr
    classId: RequiredStr
    studentUid: RequiredStr
    studentName: Optional[str] = None
    studentEmail: Optional[str] = None
    amount: float = Field(..., gt=0)


class AssignmentCreate(BaseModel):
    classId: RequiredStr
    teacherUid: RequiredStr
    title: RequiredStr
    deadline: datetime
    description: RequiredStr
    createdAt: Optional[datetime] = None


class SubmissionCreate(BaseModel):
    assignmentId: RequiredStr
    classId: RequiredStr
    studentUid: RequiredStr
    studentName: Optional[str] = None
    studentEmail: Optional[str] = None
    submissionText: RequiredStr
    submittedAt: Optional[datetime] = None


class EvaluationCreate(BaseModel):
    classId: RequiredStr
    teacherUid: RequiredStr
    studentUid: RequiredStr
    studentName: Optional[str] = None
    studentEmail: Optional[str] = None
    rating: StrictInt
    description: RequiredStr
    submittedAt: Optional[datetime] = None

    @field_validator("rating")
    @classmethod
    def rating_in_range(cls, v: int) -> int:
        if v < 1 or v > 5:
            raise ValueError("Rating must be between 1 and 5")
        return v


# ----------------------
# Basic routes
# ----------------------
@app.get("/", response_class=PlainTextResponse)
def root():
    return "Hello, EduManage"


@app.get("/test")
def test_database(db: Database = Depends(get_db)):
    response = {
        "backend": "running",
        "database": "unavailable",
        "database_name": db.name,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        db.command("ping")
        response["database"] = "connected"
        response["connection_status"] = "Connected"
        response["collections"] = db.list_collection_names()
    except PyMongoError as e:
        logger.warning("Database ping failed", exc_info=True)
        response["database"] = f"error: {str(e)[:80]}"
    return response


# ----------------------
# Auth endpoints
# ----------------------
@app.post("/jwt")
def create_jwt(body: TokenRequest, verifier: TokenVerifier = Depends(get_verifier)):
    return {"token": verifier.issue({"email": body.email})}


@app.get("/verify-jwt")
def verify_jwt(claims: Dict[str, Any] = Depends(require_claims)):
    return {"success": True, "message": "Token is valid", "email": claims.get("email")}


# ----------------------
# Users
# ----------------------
@app.post("/users", status_code=status.HTTP_201_CREATED)
def register_user(body: UserCreate, db: Database = Depends(get_db)):
    if db[USERS].find_one({"uid": body.uid}):
        raise ConflictError("User already exists")
    user = User(uid=body.uid, name=body.name, email=body.email, photoURL=body.photoURL or "")
    user_id = create_document(db, USERS, user)
    return {"success": True, "message": "User registered successfully", "userId": user_id}


@app.get("/users/{uid}", dependencies=[Depends(require_claims)])
def get_user(uid: str, db: Database = Depends(get_db)):
    user = db[USERS].find_one({"uid": uid})
    if not user:
        raise ResourceNotFoundError("User")
    return {"success": True, "user": serialize_doc(user)}


@app.patch("/users/{uid}", dependencies=[Depends(require_claims)])
def update_user_role(uid: str, body: RoleUpdate, db: Database = Depends(get_db)):
    res = db[USERS].update_one({"uid": uid}, {"$set": {"role": body.role, "updatedAt": utcnow()}})
    if res.matched_count == 0:
        raise ResourceNotFoundError("User")
    return {"success": True, "message": "User role updated successfully"}


@app.get("/users", dependencies=[Depends(require_claims)])
def list_users(db: Database = Depends(get_db)):
    return {"success": True, "users": get_documents(db, USERS, sort=[("createdAt", -1)])}


# ----------------------
# Teacher applications
# ----------------------
@app.post("/teacher-applications", status_code=status.HTTP_201_CREATED, dependencies=[Depends(require_claims)])
def apply_to_teach(body: TeacherApplicationCreate, db: Database = Depends(get_db)):
    if db[TEACHER_APPLICATIONS].find_one({"uid": body.uid}):
        raise ConflictError("You have already submitted a teaching application")
    application = TeacherApplication(**body.model_dump(exclude={"photoURL"}), photoURL=body.photoURL or "")
    application_id = create_document(db, TEACHER_APPLICATIONS, application)
    return {
        "success": True,
        "message": "Teaching application submitted successfully",
        "applicationId": application_id,
    }


@app.get("/teacher-applications", dependencies=[Depends(require_claims)])
def list_teacher_applications(db: Database = Depends(get_db)):
    applications = get_documents(db, TEACHER_APPLICATIONS, sort=[("appliedAt", -1)])
    return {"success": True, "applications": applications}


@app.patch("/teacher-applications/{application_id}")
def review_teacher_application(
    application_id: str,
    body: ApplicationReview,
    claims: Dict[str, Any] = Depends(require_claims),
    db: Database = Depends(get_db),
):
    res = db[TEACHER_APPLICATIONS].update_one(
        {"_id": oid(application_id, "application ID")},
        {"$set": {"status": body.status, "reviewedAt": utcnow(), "reviewedBy": claims.get("email")}},
    )
    if res.matched_count == 0:
        raise ResourceNotFoundError("Application")
    return {"success": True, "message": f"Application {body.status} successfully"}


# ----------------------
# Classes
# ----------------------
@app.post("/classes", status_code=status.HTTP_201_CREATED, dependencies=[Depends(require_claims)])
def create_class(body: ClassCreate, db: Database = Depends(get_db)):
    class_id = create_document(db, CLASSES, Class(**body.model_dump()))
    return {"success": True, "message": "Class created successfully and awaiting approval", "classId": class_id}


@app.get("/classes", dependencies=[Depends(require_claims)])
def list_classes(db: Database = Depends(get_db)):
    return {"success": True, "classes": get_documents(db, CLASSES, sort=[("createdAt", -1)])}


@app.get("/classes/teacher/{uid}", dependencies=[Depends(require_claims)])
def list_teacher_classes(uid: str, db: Database = Depends(get_db)):
    classes = get_documents(db, CLASSES, {"teacherUid": uid}, sort=[("createdAt", -1)])
    return {"success": True, "classes": classes}


@app.patch("/classes/{class_id}", dependencies=[Depends(require_claims)])
def update_class_status(class_id: str, body: ClassStatusUpdate, db: Database = Depends(get_db)):
    res = db[CLASSES].update_one(
        {"_id": oid(class_id, "class ID")}, {"$set": {"status": body.status, "updatedAt": utcnow()}}
    )
    if res.matched_count == 0:
        raise ResourceNotFoundError("Class")
    return {"success": True, "message": f"Class {body.status} successfully"}


@app.delete("/classes/{class_id}", dependencies=[Depends(require_claims)])
def delete_class(class_id: str, db: Database = Depends(get_db)):
    res = db[CLASSES].delete_one({"_id": oid(class_id, "class ID")})
    if res.deleted_count == 0:
        raise ResourceNotFoundError("Class")
    return {"success": True, "message": "Class deleted successfully"}


@app.patch("/classes/{class_id}/content", dependencies=[Depends(require_claims)])
def update_class_content(class_id: str, body: ClassContentUpdate, db: Database = Depends(get_db)):
    res = db[CLASSES].update_one(
        {"_id": oid(class_id, "class ID")}, {"$set": {**body.model_dump(), "updatedAt": utcnow()}}
    )
    if res.matched_count == 0:
        raise ResourceNotFoundError("Class")
    return {"success": True, "message": "Class updated successfully"}


@app.get("/classes/{class_id}", dependencies=[Depends(require_claims)])
def get_class(class_id: str, db: Database = Depends(get_db)):
    class_doc = db[CLASSES].find_one({"_id": oid(class_id, "class ID")})
    if not class_doc:
        raise ResourceNotFoundError("Class")
    return {"success": True, "class": serialize_doc(class_doc)}


@app.get("/popular-classes")
def popular_classes(db: Database = Depends(get_db)):
    pipeline = [
        {"$match": {"status": "approved"}},
        {"$addFields": {"enrollmentCount": {"$size": {"$ifNull": ["$enrolledStudents", []]}}}},
        {"$sort": {"enrollmentCount": -1}},
        {"$limit": POPULAR_CLASSES_LIMIT},
    ]
    return {"success": True, "classes": serialize_doc(list(db[CLASSES].aggregate(pipeline)))}


# ----------------------
# Payments & enrollment
# ----------------------
@app.post("/payments", status_code=status.HTTP_201_CREATED, dependencies=[Depends(require_claims)])
def create_payment(body: PaymentCreate, response: Response, db: Database = Depends(get_db)):
    result = record_payment_enrollment(
        db,
        EnrollmentRequest(
            transaction_id=body.transactionId,
            class_id=body.classId,
            student_uid=body.studentUid,
            amount=body.amount,
            student_name=body.studentName or "",
            student_email=body.studentEmail or "",
            payment_method_id=body.paymentMethodId,
            source="checkout",
        ),
    )
    if result.already_enrolled:
        response.status_code = status.HTTP_200_OK
        return {"success": True, "message": "Student is already enrolled in this class"}
    return {
        "success": True,
        "message": "Payment successful and enrolled in class",
        "paymentId": result.payment_id,
        "transactionId": body.transactionId,
    }


@app.post("/create-payment-intent", dependencies=[Depends(require_claims)])
def create_payment_intent(body: PaymentIntentCreate, gateway: PaymentGateway = Depends(get_payment_gateway)):
    intent = gateway.create_intent(
        body.amount, body.currency, {"classId": body.classId, "studentUid": body.studentUid}
    )
    return {"success": True, "clientSecret": intent["client_secret"], "paymentIntentId": intent["id"]}


@app.post("/process-enrollment", dependencies=[Depends(require_claims)])
def confirm_enrollment(
    body: EnrollmentConfirm,
    db: Database = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    result = process_enrollment(
        db,
        gateway,
        EnrollmentRequest(
            transaction_id=body.paymentIntentId,
            class_id=body.classId,
            student_uid=body.studentUid,
            amount=body.amount,
            student_name=body.studentName or "",
            student_email=body.studentEmail or "",
        ),
    )
    if result.already_enrolled:
        return {"success": True, "message": "Student is already enrolled in this class"}
    return {
        "success": True,
        "message": "Enrollment completed successfully",
        "paymentIntentId": body.paymentIntentId,
    }


@app.get("/students/{uid}/enrolled-classes", dependencies=[Depends(require_claims)])
def enrolled_classes(uid: str, db: Database = Depends(get_db)):
    classes = get_documents(
        db, CLASSES, {"enrolledStudents": uid, "status": "approved"}, sort=[("updatedAt", -1)]
    )
    return {"success": True, "classes": classes}


@app.get("/students/{uid}/payments", dependencies=[Depends(require_claims)])
def payment_history(uid: str, db: Database = Depends(get_db)):
    return {"success": True, "payments": get_documents(db, PAYMENTS, {"studentUid": uid}, sort=[("createdAt", -1)])}


# ----------------------
# Assignments & submissions
# ----------------------
@app.post("/assignments", status_code=status.HTTP_201_CREATED, dependencies=[Depends(require_claims)])
def create_assignment(body: AssignmentCreate, db: Database = Depends(get_db)):
    data = body.model_dump(exclude={"createdAt"})
    assignment = Assignment(**data, createdAt=body.createdAt or utcnow())
    assignment_id = create_document(db, ASSIGNMENTS, assignment)
    return {"success": True, "message": "Assignment created successfully", "assignmentId": assignment_id}


@app.get("/assignments/class/{class_id}", dependencies=[Depends(require_claims)])
def list_class_assignments(class_id: str, db: Database = Depends(get_db)):
    assignments = get_documents(db, ASSIGNMENTS, {"classId": class_id}, sort=[("createdAt", -1)])
    return {"success": True, "assignments": assignments}


@app.post("/submissions", status_code=status.HTTP_201_CREATED, dependencies=[Depends(require_claims)])
def submit_assignment(body: SubmissionCreate, db: Database = Depends(get_db)):
    if db[SUBMISSIONS].find_one({"assignmentId": body.assignmentId, "studentUid": body.studentUid}):
        raise ConflictError("You have already submitted this assignment")
    submission = Submission(
        assignmentId=body.assignmentId,
        classId=body.classId,
        studentUid=body.studentUid,
        studentName=body.studentName or "",
        studentEmail=body.studentEmail or "",
        submissionText=body.submissionText,
        submittedAt=body.submittedAt or utcnow(),
    )
    submission_id = create_document(db, SUBMISSIONS, submission)
    return {"success": True, "message": "Assignment submitted successfully", "submissionId": submission_id}


@app.get("/submissions/class/{class_id}", dependencies=[Depends(require_claims)])
def list_class_submissions(class_id: str, db: Database = Depends(get_db)):
    submissions = get_documents(db, SUBMISSIONS, {"classId": class_id}, sort=[("submittedAt", -1)])
    return {"success": True, "submissions": submissions}


@app.get("/submissions/student/{uid}/class/{class_id}", dependencies=[Depends(require_claims)])
def list_student_submissions(uid: str, class_id: str, db: Database = Depends(get_db)):
    submissions = get_documents(
        db, SUBMISSIONS, {"studentUid": uid, "classId": class_id}, sort=[("submittedAt", -1)]
    )
    return {"success": True, "submissions": submissions}


# ----------------------
# Teaching evaluations
# ----------------------
@app.post("/teaching-evaluations", status_code=status.HTTP_201_CREATED, dependencies=[Depends(require_claims)])
def create_teaching_evaluation(body: EvaluationCreate, db: Database = Depends(get_db)):
    if db[TEACHING_EVALUATIONS].find_one({"classId": body.classId, "studentUid": body.studentUid}):
        raise ConflictError("You have already submitted an evaluation for this class")
    evaluation = TeachingEvaluation(
        classId=body.classId,
        teacherUid=body.teacherUid,
        studentUid=body.studentUid,
        studentName=body.studentName or "",
        studentEmail=body.studentEmail or "",
        rating=body.rating,
        description=body.description,
        submittedAt=body.submittedAt or utcnow(),
    )
    evaluation_id = create_document(db, TEACHING_EVALUATIONS, evaluation)
    return {"success": True, "message": "Teaching evaluation submitted successfully", "evaluationId": evaluation_id}


@app.get("/teaching-evaluations")
def list_teaching_evaluations(db: Database = Depends(get_db)):
    evaluations = db[TEACHING_EVALUATIONS].find({}).sort("submittedAt", -1)
    return {"success": True, "evaluations": [enrich_evaluation(db, e) for e in evaluations]}


def enrich_evaluation(db: Database, evaluation: Dict[str, Any]) -> Dict[str, Any]:
    class_id = evaluation.get("classId")
    class_doc = db[CLASSES].find_one({"_id": ObjectId(class_id)}) if ObjectId.is_valid(class_id) else None
    student = db[USERS].find_one({"uid": evaluation.get("studentUid")})
    return serialize_doc(
        {
            **evaluation,
            "classTitle": class_doc["title"] if class_doc else FALLBACK_CLASS_TITLE,
            "studentPhotoURL": student.get("photoURL") if student else None,
        }
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
