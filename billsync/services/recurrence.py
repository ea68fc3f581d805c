# billsync/services/recurrence.py
import json
import logging
import re
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from billsync.config import settings
from billsync.models.schemas import Bill, RecurrenceInterval, RecurringSuggestion

logger = logging.getLogger(__name__)

# 常见周期性服务关键词（不区分大小写）
RECURRING_KEYWORDS = [
    # 流媒体
    (["netflix", "hulu", "disney", "disney+", "hbo", "max", "peacock", "paramount",
      "paramount+", "apple tv", "appletv"], "monthly", 0.95),
    (["spotify", "apple music", "youtube music", "pandora", "tidal", "deezer", "audible"], "monthly", 0.95),
    (["amazon prime", "prime video"], "monthly", 0.9),
    # 云服务
    (["icloud", "google one", "google drive", "dropbox", "onedrive"], "monthly", 0.9),
    (["adobe", "creative cloud", "microsoft 365", "office 365", "microsoft office"], "monthly", 0.9),
    # 运营商
    (["at&t", "verizon", "t-mobile", "tmobile", "sprint", "comcast", "xfinity", "spectrum",
      "cox", "frontier", "centurylink"], "monthly", 0.95),
    # 公用事业
    (["electric", "electricity", "power", "energy"], "monthly", 0.85),
    (["water", "water bill", "sewer"], "monthly", 0.85),
    (["gas", "natural gas"], "monthly", 0.85),
    (["internet", "wifi", "broadband", "fiber"], "monthly", 0.9),
    (["phone", "mobile", "cellular", "cell phone"], "monthly", 0.9),
    # 住房
    (["rent", "rental"], "monthly", 0.95),
    (["mortgage"], "monthly", 0.95),
    (["hoa", "homeowner", "homeowners association"], "monthly", 0.85),
    # 保险
    (["insurance", "auto insurance", "car insurance", "health insurance", "life insurance",
      "home insurance", "renters insurance"], "monthly", 0.8),
    # 会员
    (["gym", "fitness", "planet fitness", "la fitness", "equinox", "24 hour fitness",
      "orangetheory", "crossfit", "peloton"], "monthly", 0.9),
    (["membership", "subscription"], "monthly", 0.75),
    (["monthly"], "monthly", 0.7),
    # 年费
    (["annual", "yearly", "year subscription"], "yearly", 0.85),
    (["costco", "sam's club", "bj's"], "yearly", 0.8),
]

# 间隔天数窗口 -> (周期, 置信度)
INTERVAL_WINDOWS = [
    (5, 9, "weekly", 0.8),
    (12, 16, "biweekly", 0.8),
    (25, 35, "monthly", 0.85),
    (350, 380, "yearly", 0.85),
]

_MONTHS = re.compile(
    r"\b(january|february|march|april|may|june|july|august|september|october|november|december"
    r"|jan|feb|mar|apr|jun|jul|aug|sep|oct|nov|dec)\b"
)


def normalize_bill_name(name: Optional[str]) -> str:
    """去掉数字和月份，用于识别同一账单的不同期"""
    if not name:
        return ""
    value = re.sub(r"\d+", "", name.lower())
    value = _MONTHS.sub("", value)
    return re.sub(r"\s+", " ", value).strip()


def _keyword_match(name: str, keyword: str) -> bool:
    return re.search(rf"(?<![a-z0-9]){re.escape(keyword)}(?![a-z0-9])", name) is not None


def _interval_for_gap(gap: int):
    for low, high, interval, confidence in INTERVAL_WINDOWS:
        if low <= gap <= high:
            return interval, confidence
    return None


def _eligible(bill: Bill) -> bool:
    return not bill.is_recurring and not bill.is_paid


def _keyword_suggestions(bills: Iterable[Bill], suggestions: Dict[str, RecurringSuggestion]):
    for bill in bills:
        name = (bill.name or "").strip().lower()
        if not name:
            continue
        for keywords, interval, confidence in RECURRING_KEYWORDS:
            matched = next((k for k in keywords if _keyword_match(name, k)), None)
            if matched is None:
                continue
            existing = suggestions.get(bill.id)
            if existing is None or existing.confidence < confidence:
                suggestions[bill.id] = RecurringSuggestion(
                    bill=bill,
                    suggested_interval=interval,
                    confidence=confidence,
                    reason=f'"{matched}" is typically a {interval} recurring expense',
                )
            break


def _pattern_suggestions(bills: List[Bill], suggestions: Dict[str, RecurringSuggestion]):
    groups: Dict[str, List[Bill]] = defaultdict(list)
    for bill in bills:
        normalized = normalize_bill_name(bill.name)
        if len(normalized) >= 2:
            groups[normalized].append(bill)

    for group in groups.values():
        if len(group) < 2:
            continue
        ordered = sorted(group, key=lambda b: b.due_date)
        gaps = [
            (later.due_date - earlier.due_date).days
            for earlier, later in zip(ordered, ordered[1:])
        ]
        matches = [_interval_for_gap(gap) for gap in gaps]
        # 所有相邻间隔必须落在同一周期窗口内
        if not matches or any(m is None for m in matches):
            continue
        intervals = {m[0] for m in matches}
        if len(intervals) != 1:
            continue

        interval, confidence = matches[0]
        confidence = min(0.95, confidence + 0.03 * (len(group) - 2))
        typical_gap = round(sum(gaps) / len(gaps))
        for bill in group:
            if _eligible(bill) and bill.id not in suggestions:
                suggestions[bill.id] = RecurringSuggestion(
                    bill=bill,
                    suggested_interval=interval,
                    confidence=confidence,
                    reason=f'Found {len(group)} similar bills with "{bill.name}" pattern (~{typical_gap} days apart)',
                )


def _amount_suggestions(bills: List[Bill], suggestions: Dict[str, RecurringSuggestion]):
    groups: Dict[int, List[Bill]] = defaultdict(list)
    for bill in bills:
        if bill.amount is not None:
            groups[round(bill.amount)].append(bill)

    for amount, group in groups.items():
        for i, first in enumerate(group):
            for second in group[i + 1:]:
                a, b = normalize_bill_name(first.name), normalize_bill_name(second.name)
                shorter, longer = sorted((a, b), key=len)
                if len(shorter) <= 2 or shorter not in longer:
                    continue
                if abs((second.due_date - first.due_date).days) < 20:
                    continue
                for bill in (first, second):
                    if _eligible(bill) and bill.id not in suggestions:
                        suggestions[bill.id] = RecurringSuggestion(
                            bill=bill,
                            suggested_interval="monthly",
                            confidence=0.7,
                            reason=f"Same amount (${amount}) found in multiple bills with similar name",
                        )


def detect_recurring(bills: List[Bill]) -> List[RecurringSuggestion]:
    """找出可能是周期账单的非周期、未支付账单，按置信度降序"""
    eligible = [b for b in bills if _eligible(b)]
    if not eligible:
        return []

    suggestions: Dict[str, RecurringSuggestion] = {}
    _keyword_suggestions(eligible, suggestions)
    _pattern_suggestions(bills, suggestions)
    _amount_suggestions(bills, suggestions)
    return sorted(suggestions.values(), key=lambda s: s.confidence, reverse=True)


class DismissalStore:
    """按用户持久化被忽略的周期建议（以账单ID为键）"""

    filename = "dismissed_recurring.json"

    def __init__(self, user_id: Optional[str] = None, state_dir: Optional[str] = None):
        self.user_id = user_id or settings.default_user_id
        self.path = Path(state_dir or settings.state_dir) / self.user_id / self.filename
        self._ids: Set[str] = self._load()

    def _load(self) -> Set[str]:
        if not self.path.exists():
            return set()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error(f"读取忽略列表失败: {e}")
            return set()
        if not isinstance(data, list):
            logger.warning(f"忽略列表格式错误: {self.path}")
            return set()
        return {str(item) for item in data}

    def _save(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(sorted(self._ids)), encoding="utf-8")
        tmp.replace(self.path)

    def add(self, *bill_ids: str):
        before = len(self._ids)
        self._ids.update(bill_ids)
        if len(self._ids) != before:
            self._save()

    def __contains__(self, bill_id: str) -> bool:
        return bill_id in self._ids

    @property
    def ids(self) -> Set[str]:
        return set(self._ids)


class RecurrenceAdvisor:
    """周期建议：展示、忽略、转为周期账单"""

    def __init__(self, engine, dismissals: DismissalStore):
        self.engine = engine
        self.dismissals = dismissals

    def suggestions(self, limit: Optional[int] = None) -> List[RecurringSuggestion]:
        found = [s for s in detect_recurring(self.engine.store.bills) if s.bill.id not in self.dismissals]
        return found[:limit] if limit else found

    def dismiss(self, bill_id: str):
        self.dismissals.add(bill_id)

    def dismiss_all(self):
        self.dismissals.add(*[s.bill.id for s in self.suggestions()])

    async def mark_as_recurring(self, bill_id: str, interval: RecurrenceInterval) -> Optional[Bill]:
        result = await self.engine.update_bill(bill_id, {
            "is_recurring": True,
            "recurrence_interval": interval,
        })
        if result is not None:
            self.dismiss(bill_id)
            self.engine.toasts.success(f"{result.name} marked as recurring", f"Set to repeat {interval}")
        return result

    async def mark_all_as_recurring(self) -> int:
        success_count = 0
        for suggestion in self.suggestions():
            result = await self.engine.update_bill(suggestion.bill.id, {
                "is_recurring": True,
                "recurrence_interval": suggestion.suggested_interval,
            })
            if result is not None:
                self.dismiss(suggestion.bill.id)
                success_count += 1

        if success_count > 0:
            self.engine.toasts.success(f"{success_count} bill{'s' if success_count > 1 else ''} marked as recurring")
        return success_count
