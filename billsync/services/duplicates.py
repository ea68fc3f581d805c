# billsync/services/duplicates.py
import re
from datetime import date
from typing import Iterable, Optional, Tuple

from rapidfuzz.distance import Levenshtein

from billsync.models.schemas import Bill


def _compact(name: str) -> str:
    return re.sub(r"[^a-z0-9]", "", name.lower())


def find_duplicate(
        name: Optional[str],
        amount: Optional[float],
        due_date: Optional[date],
        existing: Iterable[Bill],
) -> Tuple[Optional[Bill], Optional[str]]:
    """检查候选账单是否与已有账单重复，返回(重复账单, 原因)"""
    if not name:
        return None, None

    normalized = _compact(name)
    if not normalized:
        return None, None

    for bill in existing:
        bill_name = _compact(bill.name)
        if not bill_name:
            continue
        similar = (
            normalized in bill_name
            or bill_name in normalized
            # 短名称编辑距离意义不大
            or (min(len(normalized), len(bill_name)) >= 5
                and Levenshtein.distance(normalized, bill_name, score_cutoff=3) <= 3)
        )
        if not similar:
            continue

        if amount is not None and bill.amount is not None and abs(amount - bill.amount) < 0.01:
            return bill, f'Similar to "{bill.name}" with same amount (${bill.amount:.2f})'
        if due_date is not None and due_date == bill.due_date:
            return bill, f'Similar to "{bill.name}" with same due date ({bill.due_date.isoformat()})'
        return bill, f'Similar name to existing bill "{bill.name}"'

    return None, None
