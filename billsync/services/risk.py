# billsync/services/risk.py
from datetime import date, timedelta
from typing import Iterable, List, Optional

from billsync.config import settings
from billsync.models.schemas import Bill, RiskBill, RiskTag
from billsync.services.due_dates import add_months, days_until_due, urgency

RISK_PRIORITY = {"overdue": 0, "urgent": 1, "forgot_last_month": 2}


def _same_bill(a: Bill, b: Bill) -> bool:
    return a.name.strip().lower() == b.name.strip().lower()


def _paid_in_month(bills: Iterable[Bill], bill: Bill, year: int, month: int) -> bool:
    for other in bills:
        if not other.is_paid or other.paid_at is None or not _same_bill(other, bill):
            continue
        if other.paid_at.year == year and other.paid_at.month == month:
            return True
    return False


def is_forgot_last_month(bill: Bill, all_bills: List[Bill], today: Optional[date] = None) -> bool:
    """上个月支付过（或是周期账单）但本月尚未支付，且7天内到期"""
    today = today or date.today()
    if bill.is_paid:
        return False
    if days_until_due(bill.due_date, today) > settings.forgot_window_days:
        return False

    last_month = add_months(today.replace(day=1), -1)
    paid_last_month = _paid_in_month(all_bills, bill, last_month.year, last_month.month)
    paid_this_month = _paid_in_month(all_bills, bill, today.year, today.month)
    return (paid_last_month or bill.is_recurring) and not paid_this_month


def classify(bill: Bill, all_bills: List[Bill], today: Optional[date] = None) -> Optional[RiskTag]:
    """返回账单的风险标签，优先级：逾期 > 紧急 > 上月已付本月未付"""
    today = today or date.today()
    if bill.is_paid:
        return None

    level = urgency(days_until_due(bill.due_date, today))
    if level in ("overdue", "urgent"):
        return level
    if is_forgot_last_month(bill, all_bills, today):
        return "forgot_last_month"
    return None


def has_late_payment_risk(bill: Bill, today: Optional[date] = None) -> bool:
    """手动支付且已逾期或即将到期的账单有滞纳金风险"""
    if bill.is_paid or bill.is_autopay:
        return False
    return days_until_due(bill.due_date, today) <= settings.urgent_days


def _plural(n: int) -> str:
    return "" if n == 1 else "s"


def _risk_message(bill: Bill, risk_type: RiskTag, days_left: int) -> str:
    if risk_type == "overdue":
        days_overdue = abs(days_left)
        return f"{bill.name} is {days_overdue} day{_plural(days_overdue)} overdue"
    if risk_type == "urgent":
        if days_left == 0:
            return f"{bill.name} is due today"
        return f"{bill.name} due in {days_left} day{_plural(days_left)}"
    return f"You paid {bill.name} last month, still unpaid this month"


def get_risk_bills(bills: List[Bill], max_items: int = 3, today: Optional[date] = None) -> List[RiskBill]:
    """按风险优先级和剩余天数排序的风险账单"""
    today = today or date.today()
    risk_bills = []
    for bill in bills:
        risk_type = classify(bill, bills, today)
        if risk_type is None:
            continue
        days_left = days_until_due(bill.due_date, today)
        risk_bills.append(RiskBill(
            bill=bill,
            risk_type=risk_type,
            message=_risk_message(bill, risk_type, days_left),
            days_left=days_left,
        ))

    risk_bills.sort(key=lambda r: (RISK_PRIORITY[r.risk_type], r.days_left))
    return risk_bills[:max_items]


def get_missed_bills(bills: List[Bill], today: Optional[date] = None) -> List[Bill]:
    """逾期超过30天仍未支付的账单"""
    today = today or date.today()
    cutoff = today - timedelta(days=30)
    return [b for b in bills if not b.is_paid and b.due_date < cutoff]
