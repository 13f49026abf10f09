# fieldflow/collaborators.py
"""
Interfaces of the surrounding application that the canonical actions call.

The in-memory implementations are complete enough to run the canonical
automation rules end to end in tests, demos and single-process deployments.
"""
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)


class ClientCategory(str, Enum):
    POTENTIAL = "potential"
    ACTIVE = "active"


@dataclass
class Invoice:
    job_id: str
    amount: float
    client_id: Optional[str] = None
    status: str = "draft"
    line_items: List[Dict[str, Any]] = field(default_factory=list)
    due_date: Optional[date] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "client_id": self.client_id,
            "status": self.status,
            "amount": self.amount,
            "line_items": list(self.line_items),
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "created_at": self.created_at.isoformat(),
        }


class InvoiceService(Protocol):
    def find_by_job(self, job_id: str) -> Optional[Invoice]: ...

    def create_draft(
        self,
        job_id: str,
        client_id: Optional[str],
        amount: float,
        line_items: List[Dict[str, Any]],
        due_in_days: int = 30,
    ) -> Invoice: ...


class ClientDirectory(Protocol):
    def get_category(self, client_id: str) -> Optional[str]: ...

    def set_category(self, client_id: str, category: str) -> None: ...


class Notifier(Protocol):
    def send(self, recipient: str, message: str, **context: Any) -> None: ...


class InMemoryInvoiceService:
    def __init__(self):
        self._invoices: Dict[str, Invoice] = {}
        self._lock = threading.Lock()

    def find_by_job(self, job_id: str) -> Optional[Invoice]:
        with self._lock:
            return self._invoices.get(job_id)

    def create_draft(
        self,
        job_id: str,
        client_id: Optional[str],
        amount: float,
        line_items: List[Dict[str, Any]],
        due_in_days: int = 30,
    ) -> Invoice:
        with self._lock:
            existing = self._invoices.get(job_id)
            if existing is not None:
                return existing
            invoice = Invoice(
                job_id=job_id,
                client_id=client_id,
                amount=amount,
                line_items=list(line_items),
                due_date=datetime.now(UTC).date() + timedelta(days=due_in_days),
            )
            self._invoices[job_id] = invoice
            logger.info("Draft invoice %s created for job %s (amount %.2f)", invoice.id, job_id, amount)
            return invoice

    def list_invoices(self) -> List[Invoice]:
        with self._lock:
            return list(self._invoices.values())


class InMemoryClientDirectory:
    def __init__(self, categories: Optional[Dict[str, str]] = None):
        self._categories: Dict[str, str] = dict(categories or {})
        self._lock = threading.Lock()

    def get_category(self, client_id: str) -> Optional[str]:
        with self._lock:
            return self._categories.get(client_id)

    def set_category(self, client_id: str, category: str) -> None:
        with self._lock:
            self._categories[client_id] = ClientCategory(category).value


class InMemoryNotifier:
    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def send(self, recipient: str, message: str, **context: Any) -> None:
        with self._lock:
            self.sent.append({"recipient": recipient, "message": message, "context": context})
        logger.info("Notification to %s: %s", recipient, message)
