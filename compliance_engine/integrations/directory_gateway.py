"""
Directory / Org Service gateway.

All reads of employee → department / position / status / manager data and
of the company's HR administrators go through this module. The engine never
queries live directory state while evaluating: it fetches one immutable
``DirectorySnapshot`` per company per rule pass and works on that.

  - DirectoryGateway: HTTP client over ``requests`` with bearer token,
    retry with backoff and a per-call timeout
  - InMemoryDirectoryGateway: seeded snapshot source for development and tests

Failure contract: ``fetch_snapshot`` either returns a complete snapshot or
raises ``DirectoryUnavailableError``. A partial directory is never returned.

Testability: pass a mock ``session`` to DirectoryGateway() in tests instead of
letting it create a real requests.Session internally.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Iterable, Mapping

import requests

from compliance_engine.core.exceptions import DirectoryUnavailableError
from compliance_engine.models.base import utcnow

logger = logging.getLogger(__name__)

# ── Retry constants ────────────────────────────────────────────────────────
_RETRY_MAX = 2
_RETRY_BACKOFF_SECONDS = [1, 4]

# ── Default request timeout ────────────────────────────────────────────────
_DEFAULT_TIMEOUT = 20

EMPLOYEE_STATUSES = {"active", "on_leave", "terminated"}


# ═════════════════════════════════════════════════════════════════════════════
# Snapshot types
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class EmployeeRecord:
    """One employee as seen by the directory at snapshot time."""
    employee_id: str
    company_id: str
    department_id: str | None = None
    position_id: str | None = None
    manager_id: str | None = None
    status: str = "active"

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @classmethod
    def from_payload(cls, company_id: str, raw: Mapping[str, Any]) -> "EmployeeRecord":
        def _opt(key):
            value = raw.get(key)
            return str(value) if value not in (None, "") else None

        employee_id = raw.get("employee_id") or raw.get("id")
        if employee_id in (None, ""):
            raise ValueError("employee record without employee_id")
        return cls(
            employee_id=str(employee_id),
            company_id=str(raw.get("company_id") or company_id),
            department_id=_opt("department_id"),
            position_id=_opt("position_id"),
            manager_id=_opt("manager_id"),
            status=str(raw.get("status") or "active").lower(),
        )


@dataclass(frozen=True)
class DirectorySnapshot:
    """Immutable point-in-time view of one company's directory."""
    company_id: str
    employees: Mapping[str, EmployeeRecord] = field(default_factory=dict)
    hr_admin_ids: frozenset[str] = frozenset()
    taken_at: datetime | None = None

    def __post_init__(self):
        object.__setattr__(self, "employees", MappingProxyType(dict(self.employees)))
        object.__setattr__(self, "hr_admin_ids", frozenset(self.hr_admin_ids))

    @classmethod
    def build(
        cls,
        company_id: str,
        employees: Iterable[EmployeeRecord],
        hr_admin_ids: Iterable[str] = (),
        taken_at: datetime | None = None,
    ) -> "DirectorySnapshot":
        return cls(
            company_id=company_id,
            employees={e.employee_id: e for e in employees},
            hr_admin_ids=frozenset(str(h) for h in hr_admin_ids),
            taken_at=taken_at or utcnow(),
        )

    @classmethod
    def from_payload(cls, company_id: str, payload: Mapping[str, Any],
                     taken_at: datetime | None = None) -> "DirectorySnapshot":
        """Build a snapshot from the directory service's JSON body.

        Expected shape::

            {"employees": [{"employee_id", "department_id", "position_id",
                            "manager_id", "status"}, ...],
             "hr_admin_ids": ["..."]}
        """
        if not isinstance(payload, Mapping) or not isinstance(payload.get("employees"), list):
            raise ValueError("directory payload must contain an 'employees' list")
        records = [EmployeeRecord.from_payload(company_id, raw) for raw in payload["employees"]]
        return cls.build(
            company_id,
            [r for r in records if r.company_id == company_id],
            payload.get("hr_admin_ids") or (),
            taken_at,
        )

    def get(self, employee_id: str) -> EmployeeRecord | None:
        return self.employees.get(employee_id)

    def active_employees(self) -> list[EmployeeRecord]:
        return [e for e in self.employees.values() if e.is_active]

    def manager_of(self, employee_id: str) -> str | None:
        """Current manager ID, or None when it cannot be resolved in this snapshot."""
        employee = self.employees.get(employee_id)
        if employee is None or not employee.manager_id:
            return None
        if employee.manager_id not in self.employees:
            return None
        return employee.manager_id

    def reports_of(self, manager_id: str) -> list[str]:
        return sorted(e.employee_id for e in self.employees.values() if e.manager_id == manager_id)


# ═════════════════════════════════════════════════════════════════════════════
# Gateways
# ═════════════════════════════════════════════════════════════════════════════

class DirectoryGateway:
    """HTTP gateway to the Directory / Org Service.

    Usage:
        gateway = DirectoryGateway.from_config(app.config)
        snapshot = gateway.fetch_snapshot("acme")
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout: int = _DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
        backoff_seconds: list[int] | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._session = session
        self._backoff = _RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds

    @classmethod
    def from_config(cls, config: Mapping[str, Any], session: requests.Session | None = None):
        return cls(
            config["DIRECTORY_SERVICE_URL"],
            token=config.get("DIRECTORY_SERVICE_TOKEN"),
            timeout=int(config.get("DIRECTORY_SERVICE_TIMEOUT") or _DEFAULT_TIMEOUT),
            session=session,
        )

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def fetch_snapshot(self, company_id: str, now: datetime | None = None) -> DirectorySnapshot:
        """GET the company's directory and return it as an immutable snapshot.

        Retries non-2xx and network errors up to ``_RETRY_MAX`` times.

        Raises:
            DirectoryUnavailableError: all attempts failed or the body was malformed.
        """
        url = f"{self.base_url}/companies/{company_id}/directory"
        last_error = "Unknown error"

        for attempt in range(_RETRY_MAX + 1):
            try:
                t0 = time.perf_counter()
                resp = self.session.get(url, headers=self._headers(), timeout=self.timeout)
                duration_ms = int((time.perf_counter() - t0) * 1000)

                if resp.ok:
                    try:
                        snapshot = DirectorySnapshot.from_payload(company_id, resp.json(), taken_at=now)
                    except ValueError as exc:
                        raise DirectoryUnavailableError(company_id, f"malformed payload: {exc}") from exc
                    logger.info(
                        "Directory snapshot fetched company=%s employees=%d (%dms)",
                        company_id, len(snapshot.employees), duration_ms,
                        extra={"company_id": company_id},
                    )
                    return snapshot

                last_error = f"HTTP {resp.status_code}: {resp.text[:500]}"
                logger.warning(
                    "Directory request failed attempt=%d/%d status=%d company=%s",
                    attempt + 1, _RETRY_MAX + 1, resp.status_code, company_id,
                    extra={"company_id": company_id},
                )

            except requests.Timeout:
                last_error = f"Request timed out after {self.timeout}s"
                logger.warning(
                    "Directory request timed out attempt=%d/%d company=%s",
                    attempt + 1, _RETRY_MAX + 1, company_id,
                    extra={"company_id": company_id},
                )

            except requests.RequestException as exc:
                last_error = str(exc)[:500]
                logger.warning(
                    "Directory network error attempt=%d/%d company=%s error=%s",
                    attempt + 1, _RETRY_MAX + 1, company_id, last_error,
                    extra={"company_id": company_id},
                )

            if attempt < _RETRY_MAX and self._backoff:
                time.sleep(self._backoff[min(attempt, len(self._backoff) - 1)])

        raise DirectoryUnavailableError(company_id, last_error)

    def ping(self) -> bool:
        """Lightweight reachability probe for the readiness endpoint."""
        try:
            resp = self.session.get(f"{self.base_url}/health", headers=self._headers(), timeout=5)
            return resp.ok
        except requests.RequestException:
            return False


class InMemoryDirectoryGateway:
    """Seeded directory for development and tests.

    Usage:
        gateway = InMemoryDirectoryGateway()
        gateway.set_company("acme", [EmployeeRecord("e1", "acme", department_id="ops")],
                            hr_admin_ids=["hr1"])
        gateway.set_unavailable("acme")   # next fetch raises DirectoryUnavailableError
    """

    def __init__(self) -> None:
        self._companies: dict[str, tuple[list[EmployeeRecord], frozenset[str]]] = {}
        self._unavailable: set[str] = set()
        self.fetch_count = 0

    def set_company(self, company_id: str, employees: Iterable[EmployeeRecord],
                    hr_admin_ids: Iterable[str] = ()) -> None:
        self._companies[company_id] = (list(employees), frozenset(hr_admin_ids))

    def set_unavailable(self, company_id: str, unavailable: bool = True) -> None:
        if unavailable:
            self._unavailable.add(company_id)
        else:
            self._unavailable.discard(company_id)

    def fetch_snapshot(self, company_id: str, now: datetime | None = None) -> DirectorySnapshot:
        self.fetch_count += 1
        if company_id in self._unavailable:
            raise DirectoryUnavailableError(company_id, "directory marked unavailable")
        employees, hr_admins = self._companies.get(company_id, ([], frozenset()))
        return DirectorySnapshot.build(company_id, employees, hr_admins, taken_at=now)

    def ping(self) -> bool:
        return True
