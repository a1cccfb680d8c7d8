"""
External Ledger Client Module

REST client for the ERP accounting service that receives journal entries for
committed financial events. Calls are bounded by a timeout and never raise on
transport failures; the caller records the outcome.
"""

import httpx
import logging
import threading
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .money import ZERO, round_money, money_sum

logger = logging.getLogger("loansvc.erp")


@dataclass
class ErpResult:
    """Outcome of one journal entry submission"""
    success: bool
    status_code: Optional[int] = None
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    skipped: bool = False

    @property
    def journal_entry_id(self) -> Optional[str]:
        value = self.data.get("journal_entry_id")
        return str(value) if value is not None else None


def validate_items(items: List[Dict[str, Any]]) -> Optional[str]:
    """
    Check journal lines before sending them.

    Returns:
        None when the entry is valid, otherwise a description of the problem
    """
    if len(items) < 2:
        return "A journal entry needs at least two lines"
    for position, item in enumerate(items):
        debit = round_money(item.get("debit", ZERO))
        credit = round_money(item.get("credit", ZERO))
        if debit > ZERO and credit > ZERO:
            return f"Line {position}: cannot carry both debit and credit"
        if debit <= ZERO and credit <= ZERO:
            return f"Line {position}: debit or credit must be positive"
        if not item.get("account_code"):
            return f"Line {position}: missing account code"
    total_debit = money_sum(item.get("debit", ZERO) for item in items)
    total_credit = money_sum(item.get("credit", ZERO) for item in items)
    if total_debit != total_credit:
        return f"Entry is not balanced: debit {total_debit} != credit {total_credit}"
    return None


class ErpClient:
    """REST client for the ERP journal entry API"""

    def __init__(
        self,
        base_url: str = "",
        email: str = "",
        password: str = "",
        timeout: float = 30.0
    ):
        self.base_url = base_url.rstrip("/")
        self.email = email
        self.password = password
        self.timeout = timeout
        self._token: Optional[str] = None
        self._token_lock = threading.Lock()
        self._client = httpx.Client(timeout=timeout)

    def is_configured(self) -> bool:
        return bool(self.base_url and self.email and self.password)

    def _authenticate(self) -> str:
        """POST /auth/login and cache the bearer token"""
        response = self._client.post(
            f"{self.base_url}/auth/login",
            json={"email": self.email, "password": self.password},
            headers={"Accept": "application/json"}
        )
        if response.status_code != 200:
            raise httpx.HTTPStatusError(
                f"ERP authentication failed with status {response.status_code}",
                request=response.request,
                response=response
            )
        data = response.json()
        token = (data.get("data") or {}).get("token")
        if not token:
            raise httpx.HTTPStatusError(
                "ERP authentication response carried no token",
                request=response.request,
                response=response
            )
        with self._token_lock:
            self._token = token
        return token

    def _get_token(self) -> str:
        with self._token_lock:
            token = self._token
        return token or self._authenticate()

    def clear_token(self) -> None:
        with self._token_lock:
            self._token = None

    def create_journal_entry(self, payload: Dict[str, Any]) -> ErpResult:
        """
        Submit a journal entry.

        Args:
            payload: dict with date, description, reference and items
                     (each item: account_code, debit, credit)

        Returns:
            ErpResult; ``skipped`` is set when the client is not configured
        """
        if not self.is_configured():
            return ErpResult(success=False, error="ERP not configured", skipped=True)

        problem = validate_items(payload.get("items", []))
        if problem:
            return ErpResult(success=False, error=problem)

        try:
            return self._send(payload, is_retry=False)
        except httpx.HTTPError as e:
            logger.error(f"ERP request failed: {e}")
            return ErpResult(success=False, error=str(e))

    def _send(self, payload: Dict[str, Any], is_retry: bool) -> ErpResult:
        token = self._get_token()
        response = self._client.post(
            f"{self.base_url}/journal-entry",
            json=payload,
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"}
        )

        if response.status_code == 201:
            data = response.json()
            return ErpResult(success=True, status_code=201, data=data.get("data") or {})

        if response.status_code == 401 and not is_retry:
            logger.warning("ERP token rejected, re-authenticating once")
            self.clear_token()
            return self._send(payload, is_retry=True)

        logger.warning(f"ERP returned {response.status_code}: {response.text}")
        error = f"HTTP error {response.status_code}"
        if response.status_code == 422:
            try:
                error = response.json().get("message", error)
            except ValueError:
                logger.warning("ERP validation response was not JSON")
        return ErpResult(success=False, status_code=response.status_code, error=error)

    def health_check(self) -> bool:
        """Check that the ERP answers and accepts the configured credentials"""
        if not self.is_configured():
            return False
        try:
            self._authenticate()
            return True
        except httpx.HTTPError:
            return False

    def close(self):
        """Close the HTTP client"""
        self._client.close()


class MockErpClient(ErpClient):
    """In-process ERP double for tests and local runs"""

    def __init__(self, fail_with: Optional[int] = None, **kwargs):
        super().__init__(base_url="http://erp.mock", email="mock@erp", password="mock", **kwargs)
        self.fail_with = fail_with
        self.sent: List[Dict[str, Any]] = []

    def create_journal_entry(self, payload: Dict[str, Any]) -> ErpResult:
        problem = validate_items(payload.get("items", []))
        if problem:
            return ErpResult(success=False, error=problem)
        if self.fail_with:
            return ErpResult(success=False, status_code=self.fail_with,
                             error=f"HTTP error {self.fail_with}")
        self.sent.append(payload)
        total = money_sum(Decimal(str(item.get("debit", "0"))) for item in payload["items"])
        return ErpResult(
            success=True,
            status_code=201,
            data={"journal_entry_id": f"JE-{len(self.sent)}", "total_debit": str(total)}
        )

    def health_check(self) -> bool:
        return True
