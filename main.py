import logging
from datetime import date, datetime
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from auth import (
    AUTH_COOKIE,
    TokenError,
    create_access_token,
    decode_access_token,
    token_max_age_secs,
)
from config import get_settings
from database import SessionLocal, init_db
from periods import local_today, month_key, parse_month_key
from scheduler import SchedulerManager
from schemas import (
    AuthOut,
    BudgetAlert,
    BudgetIn,
    BudgetOut,
    DashboardStats,
    ExpenseDashboardStats,
    ExpenseIn,
    ExpenseOut,
    ExpensePage,
    ExpenseUpdate,
    MonthlyReportOut,
    ReportsOut,
    TransactionIn,
    TransactionOut,
    TransactionPage,
    TransactionUpdate,
    UserCreate,
    UserLogin,
    UserOut,
    UserSummaryOut,
)
from services import (
    BudgetService,
    BudgetUpdateError,
    DashboardService,
    ExpenseService,
    InvalidCredentials,
    NotFoundError,
    ReportService,
    TransactionService,
    UserService,
)

settings = get_settings()

app = FastAPI(title="Finance Tracker")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    init_db()
    if settings.enable_scheduler:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(OperationalError)
async def store_unavailable_handler(request: Request, exc: OperationalError):
    logging.exception(f"store_unavailable: path={request.url.path}")
    return JSONResponse(status_code=503, content={"detail": "Database unavailable"})


@app.exception_handler(BudgetUpdateError)
async def budget_update_handler(request: Request, exc: BudgetUpdateError):
    return JSONResponse(status_code=500, content={"detail": str(exc)})


def current_user_id(
    request: Request, authorization: Optional[str] = Header(default=None)
) -> int:
    token = request.cookies.get(AUTH_COOKIE)
    if token is None and authorization and authorization.lower().startswith("bearer "):
        token = authorization[len("bearer ") :]
    if token is None:
        raise HTTPException(status_code=401, detail="Access denied. No token provided.")
    try:
        claims = decode_access_token(token)
    except TokenError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    return claims.user_id


def month_from_query(month: Optional[str]) -> str:
    if not month:
        return month_key(local_today())
    try:
        parse_month_key(month)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return month


def _set_auth_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        AUTH_COOKIE,
        token,
        max_age=token_max_age_secs(),
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        path="/",
    )


@app.get("/health")
def health():
    return {"status": "OK", "timestamp": datetime.utcnow().isoformat()}


@app.post("/api/auth/register", response_model=AuthOut, status_code=201)
def register(data: UserCreate, response: Response, db: Session = Depends(get_db)):
    try:
        user = UserService(db).register(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    token = create_access_token(user.id, user.email)
    _set_auth_cookie(response, token)
    logging.info(f"user_registered: user_id={user.id}")
    return AuthOut(token=token, user=UserOut.model_validate(user))


@app.post("/api/auth/login", response_model=AuthOut)
def login(data: UserLogin, response: Response, db: Session = Depends(get_db)):
    try:
        user = UserService(db).authenticate(data.email, data.password)
    except InvalidCredentials as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    token = create_access_token(user.id, user.email)
    _set_auth_cookie(response, token)
    return AuthOut(token=token, user=UserOut.model_validate(user))


@app.post("/api/auth/logout")
def logout(response: Response):
    response.delete_cookie(
        AUTH_COOKIE,
        path="/",
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
    )
    return {"message": "Logged out successfully"}


@app.get("/api/transactions", response_model=list[TransactionOut])
def list_transactions(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return TransactionService(db, user_id).recent()


@app.get("/api/transactions/transactions", response_model=TransactionPage)
def page_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        items, pagination = TransactionService(db, user_id).page(
            page=page, limit=limit, start=start_date, end=end_date
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return TransactionPage(
        transactions=[TransactionOut.model_validate(txn) for txn in items],
        pagination=pagination,
    )


@app.get("/api/transactions/dashboard", response_model=DashboardStats)
def transactions_dashboard(
    as_of: Optional[date] = Query(None),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return DashboardService(db, user_id).dashboard_for(as_of or local_today())


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    data: TransactionIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return TransactionService(db, user_id).create(data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.put("/api/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    data: TransactionUpdate,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return TransactionService(db, user_id).update(transaction_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        TransactionService(db, user_id).delete(transaction_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"message": "Transaction deleted successfully"}


@app.get("/api/expenses", response_model=list[ExpenseOut])
def list_expenses(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return ExpenseService(db, user_id).recent()


@app.get("/api/expenses/transactions", response_model=ExpensePage)
def page_expenses(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        items, pagination = ExpenseService(db, user_id).page(
            page=page, limit=limit, start=start_date, end=end_date
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ExpensePage(
        expenses=[ExpenseOut.model_validate(expense) for expense in items],
        pagination=pagination,
    )


@app.get("/api/expenses/dashboard", response_model=ExpenseDashboardStats)
def expenses_dashboard(
    as_of: Optional[date] = Query(None),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return ExpenseService(db, user_id).dashboard_for(as_of or local_today())


@app.post("/api/expenses", response_model=ExpenseOut, status_code=201)
def create_expense(
    data: ExpenseIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return ExpenseService(db, user_id).create(data)


@app.put("/api/expenses/{expense_id}", response_model=ExpenseOut)
def update_expense(
    expense_id: int,
    data: ExpenseUpdate,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return ExpenseService(db, user_id).update(expense_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.delete("/api/expenses/{expense_id}")
def delete_expense(
    expense_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        ExpenseService(db, user_id).delete(expense_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"message": "Expense deleted successfully"}


@app.get("/api/budgets", response_model=list[BudgetOut])
def list_budgets(
    month: Optional[str] = Query(None),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return BudgetService(db, user_id).list_for_month(month_from_query(month))


@app.post("/api/budgets", response_model=BudgetOut)
def set_budget(
    data: BudgetIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    month = month_from_query(data.month)
    return BudgetService(db, user_id).set_limit(data, month)


@app.get("/api/budgets/alerts", response_model=list[BudgetAlert])
def budget_alerts(
    month: Optional[str] = Query(None),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return BudgetService(db, user_id).alerts_for_month(month_from_query(month))


@app.get("/api/reports", response_model=ReportsOut)
def list_reports(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    service = ReportService(db, user_id)
    summary = service.summary()
    return ReportsOut(
        reports=[MonthlyReportOut.model_validate(r) for r in service.list_reports()],
        summary=UserSummaryOut.model_validate(summary) if summary else None,
    )


@app.post("/api/reports/rebuild")
def rebuild_reports(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    rebuilt = ReportService(db, user_id).rebuild_all()
    return {"rebuilt": rebuilt}
