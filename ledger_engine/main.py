import logging
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Callable

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict

from ledger_engine.aggregation import aggregate, category_breakdown, top_expenses
from ledger_engine.budget_tracker import (
    BudgetService,
    available_categories,
    budget_progress,
    budget_summary,
)
from ledger_engine.config import Settings, configure_logging, get_settings
from ledger_engine.errors import (
    DuplicateError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from ledger_engine.ledger_view import LedgerService
from ledger_engine.models import CategoryCatalog, Frequency, TransactionType
from ledger_engine.recurring_scheduler import (
    RecurrenceDefinition,
    RecurringScheduler,
    due_definitions,
    recurring_statistics,
    upcoming_definitions,
)
from ledger_engine.savings_goals import SavingsGoal, SavingsGoalService
from ledger_engine.schemas import (
    BudgetPayload,
    BudgetUpdatePayload,
    DepositPayload,
    RecurrencePayload,
    RecurrenceUpdatePayload,
    SavingsGoalPayload,
    SavingsGoalUpdatePayload,
    TransactionPayload,
    TransactionUpdatePayload,
)
from ledger_engine.store import Stores
from ledger_engine.trends import (
    Granularity,
    TrendDirection,
    TrendPeriod,
    analyze_trends,
    category_trends,
)

logger = logging.getLogger(__name__)


@dataclass
class Services:
    stores: Stores
    ledger: LedgerService
    budgets: BudgetService
    recurring: RecurringScheduler
    goals: SavingsGoalService
    catalog: CategoryCatalog
    clock: Callable[[], datetime]
    upcoming_days: int

    @classmethod
    def build(
        cls,
        stores: Stores,
        settings: Settings,
        clock: Callable[[], datetime] = datetime.now,
    ) -> "Services":
        catalog = CategoryCatalog(extra=settings.extra_categories)
        ledger = LedgerService(stores.ledger, catalog=catalog, clock=clock)
        return cls(
            stores=stores,
            ledger=ledger,
            budgets=BudgetService(stores.budgets, catalog=catalog, clock=clock),
            recurring=RecurringScheduler(
                stores.recurrences,
                ledger,
                catalog=catalog,
                clock=clock,
                max_catch_up_runs=settings.max_catch_up_runs,
            ),
            goals=SavingsGoalService(stores.goals, clock=clock),
            catalog=catalog,
            clock=clock,
            upcoming_days=settings.upcoming_days,
        )

    def today(self) -> date:
        return self.clock().date()


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: TransactionType
    amount: Decimal
    description: str
    category: str | None = None
    date: date | None
    created_at: datetime | None = None
    generated_from: int | None = None
    is_recurring: bool = False
    recurring_frequency: Frequency | None = None


class CategoryShareResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    category: str
    total_spent: Decimal
    percentage_of_total: Decimal


class SummaryResponse(BaseModel):
    total_expenses: Decimal
    total_incomes: Decimal
    balance: Decimal
    expenses_by_category: dict[str, Decimal]
    incomes_by_category: dict[str, Decimal]
    this_month_expenses: Decimal
    this_month_incomes: Decimal
    this_month_balance: Decimal
    category_breakdown: list[CategoryShareResponse]
    top_expenses: list[TransactionResponse]


class BudgetResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    category: str
    limit: Decimal
    period: str
    created_at: datetime | None = None


class BudgetProgressResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    budget_id: int
    category: str
    limit: Decimal
    spent: Decimal
    remaining: Decimal
    percentage: Decimal
    is_exceeded: bool
    status: str


class BudgetSummaryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_budget: Decimal
    total_spent: Decimal
    remaining: Decimal
    percentage: Decimal
    is_exceeded: bool
    available_categories: list[str] = []


class RecurrenceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    description: str
    amount: Decimal
    category: str | None = None
    type: TransactionType
    frequency: Frequency
    start_date: date
    next_date: date
    is_active: bool
    last_executed: date | None = None
    execution_count: int
    monthly_amount: Decimal
    days_until_next: int
    created_at: datetime | None = None


class RecurringStatsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total: int
    active: int
    inactive: int
    monthly_amount: Decimal
    due_today: int


class ToggleRecurrencePayload(BaseModel):
    is_active: bool


class GoalResponse(BaseModel):
    id: int
    name: str
    target_amount: Decimal
    saved_amount: Decimal
    target_date: date
    remaining_amount: Decimal
    progress: Decimal
    is_completed: bool
    status: str
    days_remaining: int
    created_at: datetime | None = None


class GoalStatisticsResponse(BaseModel):
    total_saved: Decimal
    total_target: Decimal
    overall_progress: Decimal
    completed_count: int
    active_count: int
    overdue_count: int
    total_count: int
    completion_rate: Decimal


class TrendBucketResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    bucket_start: date
    income: Decimal
    expense: Decimal
    balance: Decimal
    transaction_count: int
    cumulative_balance: Decimal


class TrendStatisticsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    average_income: Decimal
    average_expense: Decimal
    average_balance: Decimal
    income_trend: TrendDirection
    expense_trend: TrendDirection
    balance_trend: TrendDirection
    best_period: TrendBucketResponse | None = None
    worst_period: TrendBucketResponse | None = None
    period_count: int


class TrendReportResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    period: TrendPeriod
    granularity: Granularity
    buckets: list[TrendBucketResponse]
    statistics: TrendStatisticsResponse


def get_user_id(x_user_id: str | None) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing user identity.")
    return x_user_id.strip()


def goal_response(goal: SavingsGoal, today: date) -> GoalResponse:
    return GoalResponse(
        id=goal.id,
        name=goal.name,
        target_amount=goal.target_amount,
        saved_amount=goal.saved_amount,
        target_date=goal.target_date,
        remaining_amount=goal.remaining_amount,
        progress=goal.progress,
        is_completed=goal.is_completed,
        status=goal.status(today).value,
        days_remaining=goal.days_remaining(today),
        created_at=goal.created_at,
    )


def recurrence_response(definition: RecurrenceDefinition, today: date) -> RecurrenceResponse:
    return RecurrenceResponse.model_validate(
        {
            **asdict(definition),
            "monthly_amount": definition.monthly_amount,
            "days_until_next": definition.days_until_next(today),
        }
    )


def _error_response(status_code: int, detail: object) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


def create_app(
    settings: Settings | None = None,
    stores: Stores | None = None,
    clock: Callable[[], datetime] = datetime.now,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_stores = stores is None
        if owns_stores:
            app.state.services = Services.build(
                Stores.connect(settings.database_url), settings, clock
            )
        yield
        if owns_stores:
            app.state.services.stores.dispose()

    app = FastAPI(lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if stores is not None:
        app.state.services = Services.build(stores, settings, clock)

    @app.exception_handler(ValidationError)
    async def validation_failed(request: Request, exc: ValidationError) -> JSONResponse:
        return _error_response(400, exc.messages)

    @app.exception_handler(RequestValidationError)
    async def request_invalid(request: Request, exc: RequestValidationError) -> JSONResponse:
        messages = [
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        ]
        return _error_response(400, messages)

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return _error_response(404, str(exc))

    @app.exception_handler(DuplicateError)
    async def duplicate(request: Request, exc: DuplicateError) -> JSONResponse:
        return _error_response(409, str(exc))

    @app.exception_handler(UpstreamError)
    async def upstream_failed(request: Request, exc: UpstreamError) -> JSONResponse:
        logger.error("Store failure on %s %s", request.method, request.url.path, exc_info=exc)
        return _error_response(502, str(exc))

    def services(request: Request) -> Services:
        return request.app.state.services

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.get("/categories")
    def list_categories(request: Request) -> dict:
        catalog = services(request).catalog
        return {"expense": list(catalog.expense), "income": list(catalog.income)}

    @app.get("/transactions", response_model=list[TransactionResponse])
    def list_transactions(
        request: Request,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> list[TransactionResponse]:
        user_id = get_user_id(x_user_id)
        return [
            TransactionResponse.model_validate(txn)
            for txn in services(request).ledger.list(user_id)
        ]

    @app.post("/transactions", response_model=TransactionResponse)
    def create_transaction(
        request: Request,
        payload: TransactionPayload,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> TransactionResponse:
        user_id = get_user_id(x_user_id)
        txn = services(request).ledger.add(user_id, payload)
        return TransactionResponse.model_validate(txn)

    @app.put("/transactions/{transaction_id}", response_model=TransactionResponse)
    def update_transaction(
        request: Request,
        transaction_id: int,
        payload: TransactionUpdatePayload,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> TransactionResponse:
        user_id = get_user_id(x_user_id)
        txn = services(request).ledger.update(user_id, transaction_id, payload)
        return TransactionResponse.model_validate(txn)

    @app.delete("/transactions/{transaction_id}")
    def delete_transaction(
        request: Request,
        transaction_id: int,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> dict:
        user_id = get_user_id(x_user_id)
        services(request).ledger.remove(user_id, transaction_id)
        return {"status": "deleted"}

    @app.get("/summary", response_model=SummaryResponse)
    def summary(
        request: Request,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> SummaryResponse:
        user_id = get_user_id(x_user_id)
        svc = services(request)
        transactions = svc.ledger.list(user_id)
        totals = aggregate(transactions, svc.today())
        return SummaryResponse(
            total_expenses=totals.total_expenses,
            total_incomes=totals.total_incomes,
            balance=totals.balance,
            expenses_by_category=totals.expenses_by_category,
            incomes_by_category=totals.incomes_by_category,
            this_month_expenses=totals.this_month_expenses,
            this_month_incomes=totals.this_month_incomes,
            this_month_balance=totals.this_month_balance,
            category_breakdown=[
                CategoryShareResponse.model_validate(share)
                for share in category_breakdown(totals.expenses_by_category)
            ],
            top_expenses=[
                TransactionResponse.model_validate(txn)
                for txn in top_expenses(transactions)
            ],
        )

    @app.get("/budgets", response_model=list[BudgetResponse])
    def list_budgets(
        request: Request,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> list[BudgetResponse]:
        user_id = get_user_id(x_user_id)
        return [
            BudgetResponse.model_validate(budget)
            for budget in services(request).budgets.list(user_id)
        ]

    @app.post("/budgets", response_model=BudgetResponse)
    def create_budget(
        request: Request,
        payload: BudgetPayload,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> BudgetResponse:
        user_id = get_user_id(x_user_id)
        return BudgetResponse.model_validate(services(request).budgets.add(user_id, payload))

    @app.put("/budgets/{budget_id}", response_model=BudgetResponse)
    def update_budget(
        request: Request,
        budget_id: int,
        payload: BudgetUpdatePayload,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> BudgetResponse:
        user_id = get_user_id(x_user_id)
        budget = services(request).budgets.update(user_id, budget_id, payload)
        return BudgetResponse.model_validate(budget)

    @app.delete("/budgets/{budget_id}")
    def delete_budget(
        request: Request,
        budget_id: int,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> dict:
        user_id = get_user_id(x_user_id)
        services(request).budgets.delete(user_id, budget_id)
        return {"status": "deleted"}

    @app.get("/budgets/progress", response_model=list[BudgetProgressResponse])
    def get_budget_progress(
        request: Request,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> list[BudgetProgressResponse]:
        user_id = get_user_id(x_user_id)
        svc = services(request)
        totals = aggregate(svc.ledger.list(user_id), svc.today())
        return [
            BudgetProgressResponse.model_validate(item)
            for item in budget_progress(
                svc.budgets.list(user_id), totals.this_month_expenses_by_category
            )
        ]

    @app.get("/budgets/summary", response_model=BudgetSummaryResponse)
    def get_budget_summary(
        request: Request,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> BudgetSummaryResponse:
        user_id = get_user_id(x_user_id)
        svc = services(request)
        totals = aggregate(svc.ledger.list(user_id), svc.today())
        budgets = svc.budgets.list(user_id)
        result = budget_summary(budgets, totals.this_month_expenses_by_category)
        return BudgetSummaryResponse(
            total_budget=result.total_budget,
            total_spent=result.total_spent,
            remaining=result.remaining,
            percentage=result.percentage,
            is_exceeded=result.is_exceeded,
            available_categories=available_categories(budgets, svc.catalog),
        )

    @app.get("/recurring", response_model=list[RecurrenceResponse])
    def list_recurring(
        request: Request,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> list[RecurrenceResponse]:
        user_id = get_user_id(x_user_id)
        return [
            recurrence_response(definition, services(request).today())
            for definition in services(request).recurring.list(user_id)
        ]

    @app.post("/recurring", response_model=RecurrenceResponse)
    def create_recurring(
        request: Request,
        payload: RecurrencePayload,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> RecurrenceResponse:
        user_id = get_user_id(x_user_id)
        definition = services(request).recurring.create(user_id, payload)
        return recurrence_response(definition, services(request).today())

    @app.get("/recurring/due", response_model=list[RecurrenceResponse])
    def list_due_recurring(
        request: Request,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> list[RecurrenceResponse]:
        user_id = get_user_id(x_user_id)
        svc = services(request)
        return [
            recurrence_response(definition, svc.today())
            for definition in due_definitions(svc.recurring.list(user_id), svc.today())
        ]

    @app.get("/recurring/upcoming", response_model=list[RecurrenceResponse])
    def list_upcoming_recurring(
        request: Request,
        days: int | None = Query(None, ge=0),
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> list[RecurrenceResponse]:
        user_id = get_user_id(x_user_id)
        svc = services(request)
        horizon = svc.upcoming_days if days is None else days
        return [
            recurrence_response(definition, svc.today())
            for definition in upcoming_definitions(
                svc.recurring.list(user_id), svc.today(), horizon
            )
        ]

    @app.get("/recurring/stats", response_model=RecurringStatsResponse)
    def get_recurring_stats(
        request: Request,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> RecurringStatsResponse:
        user_id = get_user_id(x_user_id)
        svc = services(request)
        stats = recurring_statistics(svc.recurring.list(user_id), svc.today())
        return RecurringStatsResponse.model_validate(stats)

    @app.post("/recurring/run-due", response_model=list[TransactionResponse])
    def run_due_recurring(
        request: Request,
        catch_up: bool = Query(False),
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> list[TransactionResponse]:
        user_id = get_user_id(x_user_id)
        created = services(request).recurring.run_due(user_id, catch_up=catch_up)
        return [TransactionResponse.model_validate(txn) for txn in created]

    @app.put("/recurring/{definition_id}", response_model=RecurrenceResponse)
    def update_recurring(
        request: Request,
        definition_id: int,
        payload: RecurrenceUpdatePayload,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> RecurrenceResponse:
        user_id = get_user_id(x_user_id)
        definition = services(request).recurring.update(user_id, definition_id, payload)
        return recurrence_response(definition, services(request).today())

    @app.post("/recurring/{definition_id}/toggle", response_model=RecurrenceResponse)
    def toggle_recurring(
        request: Request,
        definition_id: int,
        payload: ToggleRecurrencePayload,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> RecurrenceResponse:
        user_id = get_user_id(x_user_id)
        definition = services(request).recurring.set_active(
            user_id, definition_id, payload.is_active
        )
        return recurrence_response(definition, services(request).today())

    @app.post("/recurring/{definition_id}/execute", response_model=TransactionResponse)
    def execute_recurring(
        request: Request,
        definition_id: int,
        execution_date: date | None = Query(None),
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> TransactionResponse:
        user_id = get_user_id(x_user_id)
        txn = services(request).recurring.execute(user_id, definition_id, execution_date)
        return TransactionResponse.model_validate(txn)

    @app.delete("/recurring/{definition_id}")
    def delete_recurring(
        request: Request,
        definition_id: int,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> dict:
        user_id = get_user_id(x_user_id)
        services(request).recurring.delete(user_id, definition_id)
        return {"status": "deleted"}

    @app.get("/goals", response_model=list[GoalResponse])
    def list_goals(
        request: Request,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> list[GoalResponse]:
        user_id = get_user_id(x_user_id)
        svc = services(request)
        today = svc.today()
        return [goal_response(goal, today) for goal in svc.goals.list(user_id)]

    @app.post("/goals", response_model=GoalResponse)
    def create_goal(
        request: Request,
        payload: SavingsGoalPayload,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> GoalResponse:
        user_id = get_user_id(x_user_id)
        svc = services(request)
        return goal_response(svc.goals.create(user_id, payload), svc.today())

    @app.get("/goals/stats", response_model=GoalStatisticsResponse)
    def get_goal_stats(
        request: Request,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> GoalStatisticsResponse:
        user_id = get_user_id(x_user_id)
        stats = services(request).goals.statistics(user_id)
        return GoalStatisticsResponse(
            total_saved=stats.total_saved,
            total_target=stats.total_target,
            overall_progress=stats.overall_progress,
            completed_count=len(stats.completed),
            active_count=len(stats.active),
            overdue_count=len(stats.overdue),
            total_count=stats.total_count,
            completion_rate=stats.completion_rate,
        )

    @app.put("/goals/{goal_id}", response_model=GoalResponse)
    def update_goal(
        request: Request,
        goal_id: int,
        payload: SavingsGoalUpdatePayload,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> GoalResponse:
        user_id = get_user_id(x_user_id)
        svc = services(request)
        return goal_response(svc.goals.update(user_id, goal_id, payload), svc.today())

    @app.post("/goals/{goal_id}/deposit", response_model=GoalResponse)
    def deposit_to_goal(
        request: Request,
        goal_id: int,
        payload: DepositPayload,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> GoalResponse:
        user_id = get_user_id(x_user_id)
        svc = services(request)
        return goal_response(svc.goals.deposit(user_id, goal_id, payload), svc.today())

    @app.delete("/goals/{goal_id}")
    def delete_goal(
        request: Request,
        goal_id: int,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> dict:
        user_id = get_user_id(x_user_id)
        services(request).goals.delete(user_id, goal_id)
        return {"status": "deleted"}

    @app.get("/trends", response_model=TrendReportResponse)
    def get_trends(
        request: Request,
        period: str = Query("30days"),
        granularity: str = Query("daily"),
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> TrendReportResponse:
        user_id = get_user_id(x_user_id)
        svc = services(request)
        try:
            report = analyze_trends(
                svc.ledger.list(user_id), period, granularity, svc.today()
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return TrendReportResponse.model_validate(report)

    @app.get("/trends/categories")
    def get_category_trends(
        request: Request,
        period: str = Query("30days"),
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> dict[str, dict[str, Decimal]]:
        user_id = get_user_id(x_user_id)
        svc = services(request)
        try:
            trends = category_trends(svc.ledger.list(user_id), period, svc.today())
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {
            category: {day.isoformat(): total for day, total in sorted(per_day.items())}
            for category, per_day in trends.items()
        }

    return app


app = create_app()
