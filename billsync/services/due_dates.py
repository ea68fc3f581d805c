# billsync/services/due_dates.py
from datetime import date, timedelta
from typing import Optional

from dateutil.relativedelta import relativedelta

from billsync.config import settings
from billsync.models.schemas import RecurrenceInterval, Urgency


def days_until_due(due_date: date, today: Optional[date] = None) -> int:
    """距到期日的天数，负数表示已逾期"""
    today = today or date.today()
    return (due_date - today).days


def urgency(days_left: int) -> Urgency:
    """按剩余天数划分紧急程度"""
    if days_left < 0:
        return "overdue"
    if days_left <= settings.urgent_days:
        return "urgent"
    if days_left <= 7:
        return "soon"
    if days_left <= 30:
        return "safe"
    return "distant"


def add_months(value: date, months: int, day_of_month: Optional[int] = None) -> date:
    """按月偏移，日期超出目标月份天数时取月末"""
    return value + relativedelta(months=months, day=day_of_month)


def next_due_date(
        current: date,
        interval: RecurrenceInterval,
        day_of_month: Optional[int] = None,
) -> date:
    """计算周期账单的下一个到期日"""
    if interval == "weekly":
        return current + relativedelta(weeks=1)
    if interval == "biweekly":
        return current + relativedelta(weeks=2)
    if interval == "monthly":
        return add_months(current, 1, day_of_month)
    if interval == "yearly":
        # 2月29日在平年落到2月28日
        return add_months(current, 12, day_of_month)
    raise ValueError(f"未知的周期: {interval}")


def shift_days(value: date, days: int) -> date:
    return value + timedelta(days=days)
