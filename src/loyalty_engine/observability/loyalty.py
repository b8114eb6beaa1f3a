from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class LoyaltySnapshot:
    api_calls: Dict[str, Dict[str, int]]
    identification: Dict[str, int]
    qualification: Dict[str, int]
    rewards: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "api_calls": {key: dict(value) for key, value in self.api_calls.items()},
            "identification": dict(self.identification),
            "qualification": dict(self.qualification),
            "rewards": dict(self.rewards),
        }


class LoyaltyObservabilityStore:
    """Collect loyalty pipeline telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._api_outcomes: Dict[str, int] = defaultdict(int)
        self._api_endpoints: Dict[str, int] = defaultdict(int)
        self._api_retries: Dict[str, int] = defaultdict(int)
        self._identification: Dict[str, int] = defaultdict(int)
        self._qualification: Dict[str, int] = defaultdict(int)
        self._rewards: Dict[str, int] = defaultdict(int)

    def record_api_call(self, method: str, endpoint: str, *, status: int | None, success: bool) -> None:
        with self._lock:
            self._api_endpoints[f"{method} {endpoint}"] += 1
            self._api_outcomes["success" if success else "failure"] += 1
            if status is not None:
                self._api_outcomes[f"status:{status}"] += 1

    def record_api_retry(self, reason: str) -> None:
        with self._lock:
            self._api_retries[reason] += 1

    def record_identification(self, method: str | None) -> None:
        with self._lock:
            self._identification[method or "not_found"] += 1

    def record_qualification(self, decision: str) -> None:
        with self._lock:
            self._qualification[decision] += 1

    def record_reward_event(self, event: str) -> None:
        with self._lock:
            self._rewards[event] += 1

    def snapshot(self) -> LoyaltySnapshot:
        with self._lock:
            api_calls = {
                "outcomes": dict(self._api_outcomes),
                "endpoints": dict(self._api_endpoints),
                "retries": dict(self._api_retries),
            }
            identification = dict(self._identification)
            qualification = dict(self._qualification)
            rewards = dict(self._rewards)
        return LoyaltySnapshot(
            api_calls=api_calls,
            identification=identification,
            qualification=qualification,
            rewards=rewards,
        )

    def reset(self) -> None:
        with self._lock:
            self._api_outcomes.clear()
            self._api_endpoints.clear()
            self._api_retries.clear()
            self._identification.clear()
            self._qualification.clear()
            self._rewards.clear()


_STORE = LoyaltyObservabilityStore()


def get_loyalty_store() -> LoyaltyObservabilityStore:
    return _STORE


__all__ = ["get_loyalty_store", "LoyaltyObservabilityStore", "LoyaltySnapshot"]
