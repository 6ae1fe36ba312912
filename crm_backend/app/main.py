from __future__ import annotations

import logging
from typing import Callable, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from crm_backend.app.auth import (
    AuthContext,
    get_auth_context,
    get_registry,
    get_settings,
    issue_session_token,
)
from crm_backend.app.controller import (
    ControllerRegistry,
    DashboardController,
    federated_message,
    sign_in_message,
    sign_up_message,
)
from crm_backend.app.identity import (
    IdentityError,
    IdentityErrorCode,
    IdentityGateway,
    LocalIdentityProvider,
)
from crm_backend.app.models import (
    BatchCreateRequest,
    BatchReassignRequest,
    BatchRecord,
    BulkDeleteRequest,
    BulkMoveResponse,
    BulkMoveToPotentialRequest,
    BulkMutationResponse,
    Collection,
    CreatedResponse,
    DashboardSummaryResponse,
    EnrollmentRequest,
    EnrollmentResponse,
    ExamRecord,
    ExamRecordRequest,
    FederatedSignInRequest,
    InquiryCreateRequest,
    InquiryListItem,
    InquiryUpdateRequest,
    MoveResponse,
    MoveToPotentialRequest,
    PotentialListItem,
    PotentialUpdateRequest,
    ProgramCreateRequest,
    ProgramRecord,
    SessionInfoResponse,
    SessionResponse,
    SignInRequest,
    SignUpRequest,
    StudentCreateRequest,
    StudentListItem,
    StudentUpdateRequest,
)
from crm_backend.app.observability import MetricsRegistry, configure_logging, observe_request
from crm_backend.app.persistence import SnapshotPersistence
from crm_backend.app.services.aggregation import (
    dashboard_summary,
    filter_inquiries,
    filter_students,
    lookup_label,
)
from crm_backend.app.services.authorization import (
    AuthorizationRejectedError,
    PrecheckError,
    register_employee,
)
from crm_backend.app.services.exam_results import sorted_years
from crm_backend.app.session import SessionContext
from crm_backend.app.settings import Settings, load_settings
from crm_backend.app.store import (
    InMemoryRecordStore,
    RecordNotFoundError,
    RecordStore,
    StoreError,
    StorePersistenceError,
)

logger = logging.getLogger("coaching_crm.api")


def create_app() -> FastAPI:
    app = FastAPI(title="Coaching Institute CRM API", version="0.1.0")
    configure_logging()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    settings = load_settings()
    persistence = (
        SnapshotPersistence(settings.database_url) if settings.persistence_enabled else None
    )
    store = InMemoryRecordStore(persistence=persistence)
    bootstrap_employees(store, settings)
    controllers = ControllerRegistry()
    app.state.store = store
    app.state.settings = settings
    app.state.identity_provider = LocalIdentityProvider(
        federated_token_secret=settings.federated_token_secret,
        federated_provider_name=settings.federated_provider_name,
    )
    app.state.controllers = controllers
    app.state.metrics = MetricsRegistry(open_sessions=controllers.open_session_count)

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    app.include_router(build_router())
    logger.info(
        "app_started env=%s persistence_enabled=%s employees=%s",
        settings.app_env,
        settings.persistence_enabled,
        len(settings.bootstrap_employees),
    )
    return app


def bootstrap_employees(store: RecordStore, settings: Settings) -> None:
    for employee in settings.bootstrap_employees:
        employee_id = register_employee(store, employee.email, employee.name, employee.status)
        if employee_id:
            logger.info(
                "employee_bootstrapped employee_id=%s status=%s", employee_id, employee.status
            )


def get_store(request: Request) -> RecordStore:
    return request.app.state.store


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def _store_http_error(exc: StoreError) -> HTTPException:
    if isinstance(exc, RecordNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, StorePersistenceError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
        )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def _identity_http_error(exc: IdentityError, message: str) -> HTTPException:
    status_code = (
        status.HTTP_401_UNAUTHORIZED
        if exc.code == IdentityErrorCode.invalid_credential
        else status.HTTP_400_BAD_REQUEST
    )
    return HTTPException(status_code=status_code, detail=message)


def _open_session(
    request: Request,
    sign_in: Callable[[DashboardController], SessionContext],
    message_for: Callable[[IdentityError], str],
) -> SessionResponse:
    settings = get_settings(request)
    metrics = get_metrics(request)
    controller = DashboardController(
        get_store(request), IdentityGateway(request.app.state.identity_provider)
    )
    try:
        session = sign_in(controller)
    except PrecheckError as exc:
        controller.close()
        metrics.increment("precheck_rejected")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail=exc.user_message
        ) from exc
    except IdentityError as exc:
        controller.close()
        raise _identity_http_error(exc, message_for(exc)) from exc
    except AuthorizationRejectedError as exc:
        controller.close()
        metrics.increment("authorization_rejected")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail=exc.user_message
        ) from exc

    token, expires_at = issue_session_token(settings, controller, session)
    controller.expires_at = expires_at
    get_registry(request).add(controller)
    metrics.increment("sessions_opened")
    return SessionResponse(
        token=token,
        uid=session.identity.uid,
        email=session.identity.email,
        employee_id=session.employee_id,
        expires_at_utc=expires_at,
    )


def _student_item(session: SessionContext, student) -> StudentListItem:
    return StudentListItem(
        **student.model_dump(),
        program_name=lookup_label(session.programs, student.program_id),
        batch_name=lookup_label(session.batches, student.batch_id),
    )


def _lead_item(session: SessionContext, lead, item_type):
    return item_type(
        **lead.model_dump(),
        program_name=lookup_label(session.programs, lead.program_of_interest_id),
        employee_name=lookup_label(session.employees, lead.employee_id),
    )


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        settings = get_settings(request)
        persistence = getattr(get_store(request), "persistence", None)
        if settings.persistence_enabled and persistence and not persistence.ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        return PlainTextResponse(registry.to_prometheus())

    # --- Authentication ---

    @router.post("/auth/sign-in", response_model=SessionResponse)
    def sign_in(payload: SignInRequest, request: Request) -> SessionResponse:
        return _open_session(
            request,
            lambda controller: controller.sign_in(payload.email, payload.password),
            sign_in_message,
        )

    @router.post("/auth/sign-in/federated", response_model=SessionResponse)
    def sign_in_federated(payload: FederatedSignInRequest, request: Request) -> SessionResponse:
        return _open_session(
            request,
            lambda controller: controller.sign_in_federated(payload.id_token),
            federated_message,
        )

    @router.post("/auth/sign-up", response_model=SessionResponse)
    def sign_up(payload: SignUpRequest, request: Request) -> SessionResponse:
        return _open_session(
            request,
            lambda controller: controller.sign_up(payload.email, payload.password),
            sign_up_message,
        )

    @router.post("/auth/sign-out")
    def sign_out(
        request: Request,
        ctx: AuthContext = Depends(get_auth_context),
    ) -> dict[str, str]:
        ctx.controller.sign_out()
        get_registry(request).discard(ctx.controller.id)
        return {"status": "signed_out"}

    @router.get("/session", response_model=SessionInfoResponse)
    def session_info(ctx: AuthContext = Depends(get_auth_context)) -> SessionInfoResponse:
        return SessionInfoResponse(
            uid=ctx.session.identity.uid,
            email=ctx.session.identity.email,
            display_name=ctx.session.identity.display_name,
            employee_id=ctx.employee_id,
        )

    # --- Students ---

    @router.get("/students", response_model=list[StudentListItem])
    def list_students(
        batch_id: Optional[str] = None,
        search: Optional[str] = None,
        enrollment_id: Optional[str] = None,
        email: Optional[str] = None,
        ctx: AuthContext = Depends(get_auth_context),
    ) -> list[StudentListItem]:
        students = filter_students(
            ctx.session.students.values(),
            batch_id=batch_id,
            name_or_phone=search,
            enrollment_id=enrollment_id,
            email=email,
        )
        return [_student_item(ctx.session, student) for student in students]

    @router.post("/students", response_model=CreatedResponse)
    def create_student(
        payload: StudentCreateRequest,
        ctx: AuthContext = Depends(get_auth_context),
    ) -> CreatedResponse:
        try:
            student_id = ctx.controller.records().add_student(payload)
        except StoreError as exc:
            raise _store_http_error(exc) from exc
        return CreatedResponse(id=student_id)

    @router.put("/students/{student_id}")
    def update_student(
        student_id: str,
        payload: StudentUpdateRequest,
        ctx: AuthContext = Depends(get_auth_context),
    ) -> dict[str, str]:
        try:
            ctx.controller.records().update_student(student_id, payload)
        except StoreError as exc:
            raise _store_http_error(exc) from exc
        return {"id": student_id, "status": "updated"}

    @router.delete("/students/{student_id}")
    def delete_student(
        student_id: str,
        ctx: AuthContext = Depends(get_auth_context),
    ) -> dict[str, str]:
        try:
            ctx.controller.records().delete_student(student_id)
        except StoreError as exc:
            raise _store_http_error(exc) from exc
        return {"id": student_id, "status": "deleted"}

    @router.post("/students/bulk-delete", response_model=BulkMutationResponse)
    def bulk_delete_students(
        payload: BulkDeleteRequest,
        ctx: AuthContext = Depends(get_auth_context),
    ) -> BulkMutationResponse:
        try:
            result = ctx.controller.bulk().bulk_delete(Collection.students, payload.ids)
        except StoreError as exc:
            raise _store_http_error(exc) from exc
        return BulkMutationResponse(affected=result.affected, skipped=result.skipped)

    @router.post("/students/reassign-batch", response_model=BulkMutationResponse)
    def reassign_batch(
        payload: BatchReassignRequest,
        ctx: AuthContext = Depends(get_auth_context),
    ) -> BulkMutationResponse:
        try:
            result = ctx.controller.bulk().bulk_reassign_batch(
                payload.student_ids, payload.batch_id
            )
        except StoreError as exc:
            raise _store_http_error(exc) from exc
        return BulkMutationResponse(affected=result.affected, skipped=result.skipped)

    # --- Inquiries and potentials ---

    @router.get("/inquiries", response_model=list[InquiryListItem])
    def list_inquiries(
        search: Optional[str] = None,
        ctx: AuthContext = Depends(get_auth_context),
    ) -> list[InquiryListItem]:
        inquiries = filter_inquiries(ctx.session.inquiries.values(), search)
        return [_lead_item(ctx.session, inquiry, InquiryListItem) for inquiry in inquiries]

    @router.post("/inquiries", response_model=CreatedResponse)
    def create_inquiry(
        payload: InquiryCreateRequest,
        ctx: AuthContext = Depends(get_auth_context),
    ) -> CreatedResponse:
        try:
            inquiry_id = ctx.controller.lifecycle().create_inquiry(payload)
        except StoreError as exc:
            raise _store_http_error(exc) from exc
        return CreatedResponse(id=inquiry_id)

    @router.patch("/inquiries/{inquiry_id}")
    def edit_inquiry(
        inquiry_id: str,
        payload: InquiryUpdateRequest,
        ctx: AuthContext = Depends(get_auth_context),
    ) -> dict[str, str]:
        try:
            ctx.controller.lifecycle().edit_inquiry(inquiry_id, payload)
        except StoreError as exc:
            raise _store_http_error(exc) from exc
        return {"id": inquiry_id, "status": "updated"}

    @router.post("/inquiries/bulk-delete", response_model=BulkMutationResponse)
    def bulk_delete_inquiries(
        payload: BulkDeleteRequest,
        ctx: AuthContext = Depends(get_auth_context),
    ) -> BulkMutationResponse:
        try:
            result = ctx.controller.bulk().bulk_delete(Collection.inquiries, payload.ids)
        except StoreError as exc:
            raise _store_http_error(exc) from exc
        return BulkMutationResponse(affected=result.affected, skipped=result.skipped)

    @router.post("/inquiries/{inquiry_id}/move-to-potential", response_model=MoveResponse)
    def move_to_potential(
        inquiry_id: str,
        payload: MoveToPotentialRequest,
        request: Request,
        ctx: AuthContext = Depends(get_auth_context),
    ) -> MoveResponse:
        try:
            potential_id = ctx.controller.lifecycle().move_to_potential(
                inquiry_id, payload.remark
            )
        except StoreError as exc:
            raise _store_http_error(exc) from exc
        if potential_id is None:
            return MoveResponse(moved=False)
        get_metrics(request).increment("inquiries_moved")
        return MoveResponse(moved=True, potential_id=potential_id)

    @router.post("/inquiries/move-to-potentials", response_model=BulkMoveResponse)
    def move_many_to_potentials(
        payload: BulkMoveToPotentialRequest,
        request: Request,
        ctx: AuthContext = Depends(get_auth_context),
    ) -> BulkMoveResponse:
        try:
            result = ctx.controller.lifecycle().move_many_to_potentials(
                payload.inquiry_ids, payload.remark
            )
        except StoreError as exc:
            raise _store_http_error(exc) from exc
        get_metrics(request).increment("inquiries_moved", len(result.moved))
        return BulkMoveResponse(potential_ids=result.moved, skipped=result.skipped)

    @router.get("/potentials", response_model=list[PotentialListItem])
    def list_potentials(ctx: AuthContext = Depends(get_auth_context)) -> list[PotentialListItem]:
        return [
            _lead_item(ctx.session, potential, PotentialListItem)
            for potential in ctx.session.potentials.values()
        ]

    @router.put("/potentials/{potential_id}")
    def edit_potential(
        potential_id: str,
        payload: PotentialUpdateRequest,
        ctx: AuthContext = Depends(get_auth_context),
    ) -> dict[str, str]:
        try:
            ctx.controller.lifecycle().edit_potential(potential_id, payload)
        except StoreError as exc:
            raise _store_http_error(exc) from exc
        return {"id": potential_id, "status": "updated"}

    @router.post("/potentials/{potential_id}/enroll", response_model=EnrollmentResponse)
    def enroll_potential(
        potential_id: str,
        payload: EnrollmentRequest,
        request: Request,
        ctx: AuthContext = Depends(get_auth_context),
    ) -> EnrollmentResponse:
        try:
            result = ctx.controller.lifecycle().enroll_potential(payload, potential_id)
        except StoreError as exc:
            raise _store_http_error(exc) from exc
        if result is None:
            return EnrollmentResponse(enrolled=False)
        get_metrics(request).increment("potentials_enrolled")
        return EnrollmentResponse(
            enrolled=True,
            student_id=result.student_id,
            enrollment_id=result.enrollment_id,
        )

    # --- Programs and batches ---

    @router.get("/programs", response_model=list[ProgramRecord])
    def list_programs(ctx: AuthContext = Depends(get_auth_context)) -> list[ProgramRecord]:
        return list(ctx.session.programs.values())

    @router.post("/programs", response_model=CreatedResponse)
    def create_program(
        payload: ProgramCreateRequest,
        ctx: AuthContext = Depends(get_auth_context),
    ) -> CreatedResponse:
        try:
            program_id = ctx.controller.records().add_program(payload)
        except StoreError as exc:
            raise _store_http_error(exc) from exc
        return CreatedResponse(id=program_id)

    @router.put("/programs/{program_id}")
    def update_program(
        program_id: str,
        payload: ProgramCreateRequest,
        ctx: AuthContext = Depends(get_auth_context),
    ) -> dict[str, str]:
        try:
            ctx.controller.records().update_program(program_id, payload)
        except StoreError as exc:
            raise _store_http_error(exc) from exc
        return {"id": program_id, "status": "updated"}

    @router.get("/batches", response_model=list[BatchRecord])
    def list_batches(ctx: AuthContext = Depends(get_auth_context)) -> list[BatchRecord]:
        return list(ctx.session.batches.values())

    @router.post("/batches", response_model=CreatedResponse)
    def create_batch(
        payload: BatchCreateRequest,
        ctx: AuthContext = Depends(get_auth_context),
    ) -> CreatedResponse:
        try:
            batch_id = ctx.controller.records().add_batch(payload)
        except StoreError as exc:
            raise _store_http_error(exc) from exc
        return CreatedResponse(id=batch_id)

    @router.put("/batches/{batch_id}")
    def update_batch(
        batch_id: str,
        payload: BatchCreateRequest,
        ctx: AuthContext = Depends(get_auth_context),
    ) -> dict[str, str]:
        try:
            ctx.controller.records().update_batch(batch_id, payload)
        except StoreError as exc:
            raise _store_http_error(exc) from exc
        return {"id": batch_id, "status": "updated"}

    # --- Exam results ---

    @router.get("/exams")
    def list_exam_results(
        ctx: AuthContext = Depends(get_auth_context),
    ) -> dict[str, dict[str, list[dict]]]:
        document = ctx.controller.exam_results().current()
        return {
            exam_name: {
                year: document[exam_name][year] for year in sorted_years(document, exam_name)
            }
            for exam_name in sorted(document)
        }

    @router.post("/exams/{exam_name}/{year}")
    def add_exam_result(
        exam_name: str,
        year: str,
        payload: ExamRecordRequest,
        ctx: AuthContext = Depends(get_auth_context),
    ) -> dict[str, str]:
        try:
            ctx.controller.exam_results().add(
                exam_name, year, ExamRecord.model_validate(payload.model_dump())
            )
        except StoreError as exc:
            raise _store_http_error(exc) from exc
        return {"exam": exam_name, "year": year, "status": "added"}

    @router.put("/exams/{exam_name}/{year}/{index}")
    def update_exam_result(
        exam_name: str,
        year: str,
        index: int,
        payload: ExamRecordRequest,
        ctx: AuthContext = Depends(get_auth_context),
    ) -> dict[str, str]:
        try:
            ctx.controller.exam_results().update(
                exam_name, year, index, ExamRecord.model_validate(payload.model_dump())
            )
        except StoreError as exc:
            raise _store_http_error(exc) from exc
        return {"exam": exam_name, "year": year, "status": "updated"}

    @router.delete("/exams/{exam_name}/{year}/{index}")
    def delete_exam_result(
        exam_name: str,
        year: str,
        index: int,
        ctx: AuthContext = Depends(get_auth_context),
    ) -> dict[str, str]:
        try:
            ctx.controller.exam_results().delete(exam_name, year, index)
        except StoreError as exc:
            raise _store_http_error(exc) from exc
        return {"exam": exam_name, "year": year, "status": "deleted"}

    # --- Dashboard ---

    @router.get("/dashboard", response_model=DashboardSummaryResponse)
    def dashboard(ctx: AuthContext = Depends(get_auth_context)) -> DashboardSummaryResponse:
        session = ctx.session
        return dashboard_summary(
            students=session.students,
            inquiries=session.inquiries,
            programs=session.programs,
            employees=session.employees,
        )

    return router


app = create_app()
