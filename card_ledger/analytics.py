"""
Analytics Module

Read-only views over the account store and the transaction ledger: balance
forecasting, daily income/expense trends and activity frequency. Nothing
here writes, and sparse data degrades to the current balance or zero
instead of raising.
"""

from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .accounts import AccountStore
from .credentials import Clock, utc_now
from .errors import ErrorCode, OperationResult
from .logging_config import get_logger
from .money import ZERO, to_amount
from .transactions import Transaction, TransactionLedger

SECONDS_PER_DAY = Decimal(86400)


class ForecastMethod(Enum):
    """Balance prediction strategies"""
    WEIGHTED_AVERAGE = "weighted_average"    # Recency-weighted mean daily net flow
    LINEAR_REGRESSION = "linear_regression"  # Least-squares fit of historical balances
    SIMPLE_TREND = "simple_trend"            # Last few transactions spread over a month


@dataclass(frozen=True)
class TrendReport:
    """Income and expense per calendar day, oldest day first"""
    card_number: str
    start_date: date
    end_date: date
    income_by_date: Dict[date, Decimal] = field(default_factory=dict)
    expense_by_date: Dict[date, Decimal] = field(default_factory=dict)

    @property
    def total_income(self) -> Decimal:
        return sum(self.income_by_date.values(), ZERO)

    @property
    def total_expense(self) -> Decimal:
        return sum(self.expense_by_date.values(), ZERO)

    @property
    def net(self) -> Decimal:
        return self.total_income - self.total_expense

    def to_dict(self) -> Dict[str, Any]:
        return {
            "card_number": self.card_number,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "income_by_date": {d.isoformat(): str(v) for d, v in self.income_by_date.items()},
            "expense_by_date": {d.isoformat(): str(v) for d, v in self.expense_by_date.items()},
            "total_income": str(self.total_income),
            "total_expense": str(self.total_expense),
        }


class AnalyticsEngine:
    """Forecasting and reporting over a card's history"""

    def __init__(self, store: AccountStore, ledger: TransactionLedger,
                 config=None, clock: Optional[Clock] = None):
        if config is None:
            from .config import get_config
            config = get_config()
        self.store = store
        self.ledger = ledger
        self.clock = clock or utc_now
        self.window_days = config.forecast_window_days
        self.decay = Decimal(config.forecast_decay)
        self.regression_min_points = config.regression_min_points
        self.simple_trend_sample = config.simple_trend_sample
        self.simple_trend_days = config.simple_trend_days
        self.logger = get_logger("card_ledger.analytics")

    # Forecasting

    def predict_balance(self, card_number: str, days_ahead: int,
                        method: ForecastMethod = ForecastMethod.WEIGHTED_AVERAGE) -> Decimal:
        """
        Predict the balance days_ahead days from now.

        With fewer than two transactions the current balance is returned
        (zero for an unknown card). The prediction is never negative.
        """
        account = self.store.get(card_number)
        if account is None:
            return ZERO

        transactions = self.ledger.for_card(card_number)
        if len(transactions) < 2:
            self.logger.debug(f"Not enough history to forecast {card_number}")
            return account.balance

        if method == ForecastMethod.LINEAR_REGRESSION:
            predicted = self._linear_regression(transactions, days_ahead)
            if predicted is None:
                predicted = self._weighted_average(account.balance, transactions, days_ahead)
        elif method == ForecastMethod.SIMPLE_TREND:
            predicted = self._simple_trend(account.balance, transactions, days_ahead)
        else:
            predicted = self._weighted_average(account.balance, transactions, days_ahead)

        return max(to_amount(predicted), ZERO)

    def calculate_predicted_balance(self, card_number: str, days_ahead: int,
                                    method: ForecastMethod = ForecastMethod.WEIGHTED_AVERAGE) -> OperationResult:
        """predict_balance with input checks; value is the predicted balance"""
        if not card_number:
            return OperationResult.fail(ErrorCode.INVALID_INPUT, "Card number must not be empty")
        if days_ahead <= 0:
            return OperationResult.fail(ErrorCode.INVALID_INPUT, "Number of days must be positive")
        if not self.store.exists(card_number):
            return OperationResult.fail(ErrorCode.NOT_FOUND, "Account does not exist")
        return OperationResult.ok(value=self.predict_balance(card_number, days_ahead, method))

    def _weighted_average(self, balance: Decimal, transactions: List[Transaction],
                          days_ahead: int) -> Decimal:
        """
        Project the recency-weighted mean daily net flow forward.

        Net flow is summed per active day inside the trailing window, and
        each day is weighted 1 / (1 + days_ago * decay).
        """
        today = self._today()
        daily_net: Dict[int, Decimal] = {}
        for transaction in transactions:
            if not (transaction.is_income or transaction.is_expense):
                continue
            days_ago = (today - transaction.timestamp.date()).days
            if 0 <= days_ago < self.window_days:
                daily_net[days_ago] = daily_net.get(days_ago, ZERO) + transaction.signed_amount

        if not daily_net:
            return balance

        weighted_sum = ZERO
        weight_total = Decimal(0)
        for days_ago, net in daily_net.items():
            weight = 1 / (1 + days_ago * self.decay)
            weighted_sum += net * weight
            weight_total += weight

        return balance + weighted_sum / weight_total * days_ahead

    def _linear_regression(self, transactions: List[Transaction], days_ahead: int) -> Optional[Decimal]:
        """
        Fit balance_after against days from now and evaluate at days_ahead.

        Returns None when there are too few points or they share one instant.
        """
        now = self.clock()
        points: List[Tuple[Decimal, Decimal]] = [
            (Decimal(str((t.timestamp - now).total_seconds())) / SECONDS_PER_DAY, t.balance_after)
            for t in transactions
            if t.is_income or t.is_expense
        ]
        if len(points) < self.regression_min_points:
            return None

        n = len(points)
        mean_x = sum((x for x, _ in points), Decimal(0)) / n
        mean_y = sum((y for _, y in points), Decimal(0)) / n
        variance = sum(((x - mean_x) ** 2 for x, _ in points), Decimal(0))
        if variance == 0:
            return None
        covariance = sum(((x - mean_x) * (y - mean_y) for x, y in points), Decimal(0))

        slope = covariance / variance
        intercept = mean_y - slope * mean_x
        return intercept + slope * days_ahead

    def _simple_trend(self, balance: Decimal, transactions: List[Transaction],
                      days_ahead: int) -> Decimal:
        """Spread the latest transactions' income and expense evenly over a month"""
        latest = sorted(transactions, key=lambda t: t.timestamp)[-self.simple_trend_sample:]
        income = sum((t.amount for t in latest if t.is_income), ZERO)
        expense = sum((t.amount for t in latest if t.is_expense), ZERO)
        daily_change = (income - expense) / self.simple_trend_days
        return balance + daily_change * days_ahead

    # Reporting

    def trend(self, card_number: str, days: int) -> TrendReport:
        """
        Income (deposits) and expense (withdrawals and transfers) per day over
        the window of days ending today. Days without activity are zero.
        """
        end_date = self._today()
        start_date = end_date - timedelta(days=max(days, 1) - 1)

        income: Dict[date, Decimal] = {}
        expense: Dict[date, Decimal] = {}
        day = start_date
        while day <= end_date:
            income[day] = ZERO
            expense[day] = ZERO
            day += timedelta(days=1)

        if days > 0:
            for transaction in self.ledger.for_card(card_number):
                day = transaction.timestamp.date()
                if not start_date <= day <= end_date:
                    continue
                if transaction.is_income:
                    income[day] += transaction.amount
                elif transaction.is_expense:
                    expense[day] += transaction.amount

        return TrendReport(
            card_number=card_number,
            start_date=start_date,
            end_date=end_date,
            income_by_date=income,
            expense_by_date=expense
        )

    def get_trend(self, card_number: str, days: int) -> OperationResult:
        """trend with input checks; value is the TrendReport"""
        if not card_number:
            return OperationResult.fail(ErrorCode.INVALID_INPUT, "Card number must not be empty")
        if days <= 0:
            return OperationResult.fail(ErrorCode.INVALID_INPUT, "Number of days must be positive")
        if not self.store.exists(card_number):
            return OperationResult.fail(ErrorCode.NOT_FOUND, "Account does not exist")
        return OperationResult.ok(value=self.trend(card_number, days))

    def transaction_frequency(self, card_number: str, days: int) -> float:
        """Average number of transactions per day over the window ending today"""
        if not card_number or days <= 0 or not self.store.exists(card_number):
            return 0.0

        end_date = self._today()
        start_date = end_date - timedelta(days=days - 1)
        count = sum(
            1 for transaction in self.ledger.for_card(card_number)
            if start_date <= transaction.timestamp.date() <= end_date
        )
        return count / days

    def _today(self) -> date:
        return self.clock().date()
