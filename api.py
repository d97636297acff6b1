import logging
import os
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from config import settings
from database import get_db_connection
from errors import (
    AlreadyClosedError,
    InsufficientStockError,
    InvariantViolation,
    LoanError,
    LoanOverdueError,
    NotFoundError,
    PersonNotEligibleError,
    ResourceNotLoanableError,
    StockReleaseError,
    ValidationError,
)
from library import Library
from loan import utcnow

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

library = Library(db_file=os.environ.get("LIBRARY_DB_FILE"))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"{settings.app_name} {settings.app_version} starting ({settings.environment})")
    pending = library.reconcile_stock()
    if pending:
        logger.warning(f"Restored stock for {len(pending)} loan(s) left pending by a previous run")
    yield


app = FastAPI(title=f"{settings.app_name} API", version=settings.app_version, lifespan=lifespan)

app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency validating the API key on mutating routes."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


# --- Error mapping ---
ERROR_STATUS = (
    (NotFoundError, 404),
    (ValidationError, 400),
    (InsufficientStockError, 409),
    (ResourceNotLoanableError, 409),
    (AlreadyClosedError, 409),
    (LoanOverdueError, 409),
    (PersonNotEligibleError, 422),
)


@app.exception_handler(LoanError)
async def loan_error_handler(request: Request, exc: LoanError):
    status = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 400)
    body: Dict[str, Any] = {"detail": str(exc), "code": exc.code}
    if isinstance(exc, PersonNotEligibleError):
        body["reason"] = exc.reason
    return JSONResponse(status_code=status, content=body)


@app.exception_handler(InvariantViolation)
@app.exception_handler(StockReleaseError)
async def internal_error_handler(request: Request, exc: Exception):
    logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "The operation could not be completed. Please try again.", "code": "internal_error"},
    )


# --- Models ---
class LoanCreateModel(BaseModel):
    person_id: str
    resource_id: str
    quantity: int = 1
    observations: Optional[str] = None


class ReturnLoanModel(BaseModel):
    return_date: Optional[datetime] = None
    resource_condition: str = "good"
    observations: Optional[str] = None


class LostLoanModel(BaseModel):
    observations: Optional[str] = None


class RenewLoanModel(BaseModel):
    new_due_date: Optional[datetime] = None


class LoanModel(BaseModel):
    id: str
    person_id: str
    resource_id: str
    quantity: int
    loan_date: str
    due_date: str
    returned_date: Optional[str] = None
    status: str
    observations: Optional[str] = None
    resource_condition: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    is_overdue: bool
    days_overdue: int
    display_status: str


class PaginatedLoansModel(BaseModel):
    items: List[LoanModel]
    total: int
    page: int
    limit: int
    total_pages: int


class ReturnResultModel(BaseModel):
    loan: LoanModel
    days_overdue: int
    was_overdue: bool
    condition_flagged: bool
    message: str


class OverdueStatsModel(BaseModel):
    total_overdue: int
    average_days_overdue: float
    by_days_overdue: Dict[str, int]
    by_person_type: Dict[str, int]


class EligibilityModel(BaseModel):
    eligible: bool
    reason: Optional[str] = None
    active_count: int
    overdue_count: int
    max_loans_allowed: int
    restrictions: Dict[str, bool]


class ResourceCreateModel(BaseModel):
    title: str
    total_quantity: int = Field(1, ge=0)
    available_quantity: Optional[int] = Field(None, ge=0)
    state: str = "good"


class PersonCreateModel(BaseModel):
    full_name: str
    person_type: str = "student"
    active: bool = True


# --- Health ---
@app.get("/health")
def health():
    """Lightweight health check with a quick database round trip."""
    db_ok = True
    try:
        conn = get_db_connection(library.db_file)
        try:
            conn.execute("SELECT 1")
        finally:
            conn.close()
    except Exception as e:
        logger.warning(f"Health check database probe failed: {e}")
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": utcnow().isoformat(),
        "db": db_ok,
        "version": settings.app_version,
    }


# --- Loans ---
@app.post("/loans", response_model=LoanModel, status_code=201, dependencies=[Depends(get_api_key)])
def create_loan(payload: LoanCreateModel):
    loan = library.create_loan(payload.person_id, payload.resource_id, payload.quantity, payload.observations)
    return library.describe(loan)


@app.get("/loans", response_model=PaginatedLoansModel)
def list_loans(
    status: Optional[str] = Query(None, description="active | returned | lost | overdue"),
    is_overdue: Optional[bool] = None,
    person_id: Optional[str] = None,
    resource_id: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    sort_by: str = Query("loan_date", description="loan_date | due_date | days_overdue"),
    sort_order: str = Query("desc", description="asc | desc"),
):
    now = utcnow()
    result = library.list_loans(
        status=status,
        is_overdue=is_overdue,
        person_id=person_id,
        resource_id=resource_id,
        date_from=date_from,
        date_to=date_to,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
        now=now,
    )
    result["items"] = [library.describe(loan, now) for loan in result["items"]]
    return result


@app.get("/loans/overdue", response_model=List[LoanModel])
def list_overdue_loans():
    now = utcnow()
    return [library.describe(loan, now) for loan in library.list_overdue(now)]


@app.get("/loans/overdue/stats", response_model=OverdueStatsModel)
def get_overdue_stats():
    return library.overdue_statistics()


@app.get("/loans/statistics")
def get_loan_statistics():
    return library.loan_statistics()


@app.get("/loans/can-borrow/{person_id}", response_model=EligibilityModel)
def can_borrow(person_id: str):
    return library.can_borrow(person_id).to_dict()


@app.get("/loans/{loan_id}", response_model=LoanModel)
def get_loan(loan_id: str):
    return library.describe(library.get_loan(loan_id))


@app.post("/loans/{loan_id}/return", response_model=ReturnResultModel, dependencies=[Depends(get_api_key)])
def return_loan(loan_id: str, payload: ReturnLoanModel):
    now = utcnow()
    result = library.return_loan(
        loan_id, payload.return_date, payload.resource_condition, payload.observations, now=now
    )
    return result.to_dict(now)


@app.post("/loans/{loan_id}/lost", response_model=ReturnResultModel, dependencies=[Depends(get_api_key)])
def mark_loan_lost(loan_id: str, payload: Optional[LostLoanModel] = None):
    now = utcnow()
    result = library.mark_as_lost(loan_id, payload.observations if payload else None, now=now)
    return result.to_dict(now)


@app.post("/loans/{loan_id}/renew", response_model=LoanModel, dependencies=[Depends(get_api_key)])
def renew_loan(loan_id: str, payload: Optional[RenewLoanModel] = None):
    now = utcnow()
    loan = library.renew_loan(loan_id, payload.new_due_date if payload else None, now=now)
    return library.describe(loan, now)


# --- Collaborator records (minimal, loan core only reads them) ---
@app.post("/resources", status_code=201, dependencies=[Depends(get_api_key)])
def create_resource(payload: ResourceCreateModel):
    resource = library.add_resource(
        payload.title,
        payload.total_quantity,
        available_quantity=payload.available_quantity,
        state=payload.state,
    )
    return resource.to_dict()


@app.get("/resources/{resource_id}")
def get_resource(resource_id: str):
    return library.get_resource(resource_id).to_dict()


@app.post("/people", status_code=201, dependencies=[Depends(get_api_key)])
def create_person(payload: PersonCreateModel):
    person = library.add_person(payload.full_name, payload.person_type, active=payload.active)
    return person.to_dict()


@app.get("/people/{person_id}")
def get_person(person_id: str):
    return library.get_person(person_id).to_dict()
