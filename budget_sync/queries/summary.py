"""
Derived Reads

DESIGN DECISION: Everything here is a pure function of an AppState.
Nothing is cached and nothing is written back, so these reads never
interact with sync. Amounts stay Decimal end to end.

Budget periods are calendar windows ending today:
- weekly: from the most recent Sunday
- monthly: from the 1st of the month
- yearly: from January 1st
"""

from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from budget_sync.models.budget import (
    AppState,
    BudgetPeriod,
    Transaction,
    TransactionType,
)


class BalanceSummary(BaseModel):
    """Income, expenses and what is left."""
    income: Decimal = Decimal("0")
    expenses: Decimal = Decimal("0")
    balance: Decimal = Decimal("0")


class BudgetUsage(BaseModel):
    """How much of one category's budget the current period has used."""
    category: str
    period: BudgetPeriod
    budgeted: Decimal
    spent: Decimal
    remaining: Decimal = Field(
        description="Negative when over budget"
    )
    percent_used: Optional[Decimal] = Field(
        default=None,
        description="None when the budget amount is zero"
    )


class AlertKind(str, Enum):
    LOW_BALANCE = "low_balance"
    BUDGET_WARNING = "budget_warning"
    BUDGET_EXCEEDED = "budget_exceeded"


class AlertLevel(str, Enum):
    WARNING = "warning"
    DANGER = "danger"


class Alert(BaseModel):
    kind: AlertKind
    level: AlertLevel
    message: str
    category: Optional[str] = None


class TransactionFilter(BaseModel):
    """All fields optional; unset fields match everything."""
    category: Optional[str] = None
    type: Optional[TransactionType] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None


def calculate_balance(transactions: list[Transaction]) -> BalanceSummary:
    income = sum(
        (t.amount for t in transactions if t.type == TransactionType.INCOME),
        Decimal("0"),
    )
    expenses = sum(
        (t.amount for t in transactions if t.type == TransactionType.EXPENSE),
        Decimal("0"),
    )
    return BalanceSummary(income=income, expenses=expenses, balance=income - expenses)


def period_start(period: BudgetPeriod, today: Optional[date] = None) -> date:
    """First day of the budget window containing `today`."""
    today = today or date.today()
    if period == BudgetPeriod.WEEKLY:
        # date.weekday() is Monday=0; weeks start on Sunday
        return today - timedelta(days=(today.weekday() + 1) % 7)
    if period == BudgetPeriod.YEARLY:
        return today.replace(month=1, day=1)
    return today.replace(day=1)


def category_spending(
    transactions: list[Transaction],
    category: str,
    period: BudgetPeriod = BudgetPeriod.MONTHLY,
    today: Optional[date] = None,
) -> Decimal:
    """Expenses in `category` since the start of the current period."""
    start = period_start(period, today)
    return sum(
        (
            t.amount
            for t in transactions
            if t.type == TransactionType.EXPENSE
            and t.category == category
            and t.date >= start
        ),
        Decimal("0"),
    )


def budget_usage(state: AppState, today: Optional[date] = None) -> list[BudgetUsage]:
    usage = []
    for category, budget in state.budgets.items():
        spent = category_spending(state.transactions, category, budget.period, today)
        percent = None
        if budget.amount > 0:
            percent = spent / budget.amount * 100
        usage.append(
            BudgetUsage(
                category=category,
                period=budget.period,
                budgeted=budget.amount,
                spent=spent,
                remaining=budget.amount - spent,
                percent_used=percent,
            )
        )
    return usage


def total_budget_remaining(state: AppState, today: Optional[date] = None) -> Decimal:
    """Total budgeted minus total spent this period, never below zero."""
    if not state.budgets:
        return Decimal("0")
    usage = budget_usage(state, today)
    total_budget = sum((u.budgeted for u in usage), Decimal("0"))
    total_spent = sum((u.spent for u in usage), Decimal("0"))
    return max(Decimal("0"), total_budget - total_spent)


def check_alerts(state: AppState, today: Optional[date] = None) -> list[Alert]:
    """
    Low balance first, then one alert per budget at or past its threshold.
    """
    alerts = []
    settings = state.settings

    balance = calculate_balance(state.transactions).balance
    if balance < settings.low_balance_threshold:
        alerts.append(
            Alert(
                kind=AlertKind.LOW_BALANCE,
                level=AlertLevel.WARNING,
                message=f"Low balance warning: {balance:.2f}",
            )
        )

    for usage in budget_usage(state, today):
        if usage.percent_used is None:
            exceeded = usage.spent > 0
        else:
            exceeded = usage.percent_used >= 100

        if exceeded:
            alerts.append(
                Alert(
                    kind=AlertKind.BUDGET_EXCEEDED,
                    level=AlertLevel.DANGER,
                    message=f"Budget exceeded for {usage.category}!",
                    category=usage.category,
                )
            )
        elif (
            usage.percent_used is not None
            and usage.percent_used >= settings.overspending_alert_percent
        ):
            alerts.append(
                Alert(
                    kind=AlertKind.BUDGET_WARNING,
                    level=AlertLevel.WARNING,
                    message=(
                        f"Approaching budget limit for {usage.category} "
                        f"({usage.percent_used:.0f}%)"
                    ),
                    category=usage.category,
                )
            )

    return alerts


def filter_transactions(
    transactions: list[Transaction],
    criteria: Optional[TransactionFilter] = None,
) -> list[Transaction]:
    """Matching transactions, newest date first."""
    criteria = criteria or TransactionFilter()
    matches = []
    for t in transactions:
        if criteria.category and t.category != criteria.category:
            continue
        if criteria.type and t.type != criteria.type:
            continue
        if criteria.date_from and t.date < criteria.date_from:
            continue
        if criteria.date_to and t.date > criteria.date_to:
            continue
        matches.append(t)

    # Stable sort keeps insertion order for same-day entries
    matches.sort(key=lambda t: t.date, reverse=True)
    return matches
