"""Embedding cost accounting.

Prices are USD per 1K input tokens. Local sentence-transformers models
are free; unknown models are priced at zero with a warning.
"""

import logging
import math
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Any, Optional

logger = logging.getLogger(__name__)

PRICING: Dict[str, Dict[str, Any]] = {
    'text-embedding-3-large': {'input': 0.00013, 'name': 'Text Embedding 3 Large'},
    'text-embedding-3-small': {'input': 0.00002, 'name': 'Text Embedding 3 Small'},
    'text-embedding-ada-002': {'input': 0.0001, 'name': 'Text Embedding Ada 002'},
    'all-MiniLM-L6-v2': {'input': 0.0, 'name': 'MiniLM L6 v2 (local)'},
}

CHARS_PER_TOKEN = 4
MAX_HISTORY = 10000


def estimate_tokens(text: str) -> int:
    """Rough token count: ~4 characters per token."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def calculate_cost(model: str, tokens: int) -> float:
    """USD cost of embedding ``tokens`` tokens with ``model``."""
    pricing = PRICING.get(model)
    if pricing is None:
        logger.warning(f"Unknown model for pricing: {model}")
        return 0.0
    return (tokens / 1000) * pricing['input']


@dataclass
class UsageRecord:
    model: str
    tokens: int
    cost: float
    session_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'model': self.model,
            'tokens': self.tokens,
            'cost': round(self.cost, 6),
            'session_id': self.session_id,
            'timestamp': self.timestamp.isoformat(),
        }


class CostTracker:
    """Accumulates embedding spend per day, per month and per session."""

    def __init__(self, daily_limit: float = 5.0, monthly_limit: float = 100.0):
        self.daily_limit = daily_limit
        self.monthly_limit = monthly_limit
        self._daily: Dict[str, float] = defaultdict(float)
        self._monthly: Dict[str, float] = defaultdict(float)
        self._sessions: Dict[str, float] = defaultdict(float)
        self._history: List[UsageRecord] = []
        self._lock = threading.Lock()

    def track_embedding(self, model: str, tokens: int,
                        session_id: Optional[str] = None) -> UsageRecord:
        """Record one embedding call and return its usage record."""
        record = UsageRecord(model=model, tokens=tokens,
                             cost=calculate_cost(model, tokens), session_id=session_id)
        day = record.timestamp.strftime('%Y-%m-%d')
        month = record.timestamp.strftime('%Y-%m')

        with self._lock:
            self._history.append(record)
            if len(self._history) > MAX_HISTORY:
                self._history = self._history[-MAX_HISTORY:]
            self._daily[day] += record.cost
            self._monthly[month] += record.cost
            if session_id:
                self._sessions[session_id] += record.cost

        for alert in self.check_budget_alerts():
            logger.warning(alert['message'])
        return record

    def session_cost(self, session_id: str) -> float:
        with self._lock:
            return self._sessions.get(session_id, 0.0)

    def check_budget_alerts(self) -> List[Dict[str, Any]]:
        status = self.budget_status()
        alerts = []
        if status['daily']['spent'] > self.daily_limit:
            alerts.append({
                'type': 'daily-budget-exceeded',
                'severity': 'warning',
                'message': f"Daily cost exceeded: ${status['daily']['spent']:.4f} (limit ${self.daily_limit})",
                'cost': status['daily']['spent'],
                'limit': self.daily_limit,
            })
        if status['monthly']['spent'] > self.monthly_limit:
            alerts.append({
                'type': 'monthly-budget-exceeded',
                'severity': 'error',
                'message': f"Monthly cost exceeded: ${status['monthly']['spent']:.2f} (limit ${self.monthly_limit})",
                'cost': status['monthly']['spent'],
                'limit': self.monthly_limit,
            })
        return alerts

    def budget_status(self) -> Dict[str, Any]:
        now = datetime.utcnow()
        with self._lock:
            daily = self._daily.get(now.strftime('%Y-%m-%d'), 0.0)
            monthly = self._monthly.get(now.strftime('%Y-%m'), 0.0)

        def window(spent: float, limit: float) -> Dict[str, Any]:
            return {
                'spent': round(spent, 6),
                'limit': limit,
                'percentage': round(spent / limit * 100) if limit else 0,
                'remaining': round(limit - spent, 6),
            }

        return {
            'daily': window(daily, self.daily_limit),
            'monthly': window(monthly, self.monthly_limit),
        }

    def update_budget_limits(self, daily: Optional[float] = None,
                             monthly: Optional[float] = None) -> Dict[str, float]:
        if daily and daily > 0:
            self.daily_limit = daily
        if monthly and monthly > 0:
            self.monthly_limit = monthly
        logger.info(f"Budget limits updated: daily ${self.daily_limit}, monthly ${self.monthly_limit}")
        return {'daily': self.daily_limit, 'monthly': self.monthly_limit}

    def analytics(self, days: int = 30) -> Dict[str, Any]:
        """Totals, per-model breakdown and daily trend over the last ``days`` days."""
        since = datetime.utcnow() - timedelta(days=days)
        with self._lock:
            recent = [r for r in self._history if r.timestamp >= since]

        total_cost = sum(r.cost for r in recent)
        total_tokens = sum(r.tokens for r in recent)

        by_model: Dict[str, Dict[str, Any]] = {}
        for record in recent:
            entry = by_model.setdefault(record.model, {'model': record.model, 'requests': 0, 'tokens': 0, 'cost': 0.0})
            entry['requests'] += 1
            entry['tokens'] += record.tokens
            entry['cost'] += record.cost

        trends = []
        today = datetime.utcnow().date()
        for offset in range(days - 1, -1, -1):
            day = (today - timedelta(days=offset)).isoformat()
            day_records = [r for r in recent if r.timestamp.date().isoformat() == day]
            trends.append({
                'date': day,
                'cost': round(sum(r.cost for r in day_records), 6),
                'tokens': sum(r.tokens for r in day_records),
                'requests': len(day_records),
            })

        return {
            'days': days,
            'summary': {
                'total_cost': round(total_cost, 6),
                'total_tokens': total_tokens,
                'total_requests': len(recent),
                'avg_cost_per_request': round(total_cost / len(recent), 6) if recent else 0,
            },
            'models': sorted(by_model.values(), key=lambda e: e['cost'], reverse=True),
            'daily_trends': trends,
            'budget_status': self.budget_status(),
            'alerts': self.check_budget_alerts(),
        }


def pricing_info() -> List[Dict[str, Any]]:
    return [
        {'model': model, 'name': p['name'], 'input_price': p['input'], 'unit': 'per 1K tokens'}
        for model, p in PRICING.items()
    ]


def estimate(model: str, tokens: Optional[int] = None, text: Optional[str] = None) -> Dict[str, Any]:
    """Cost estimate for a token count, or for a text when no count is given."""
    if tokens is None:
        tokens = estimate_tokens(text or '')
    return {
        'model': model,
        'tokens': tokens,
        'estimated_cost': calculate_cost(model, tokens),
        'known_model': model in PRICING,
    }
