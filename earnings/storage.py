"""
In-process document store standing in for the hosted database.

It exposes only the indexed operations the engine is allowed to use: point
lookups by unique key, creator-scoped range queries ordered by ``created_at``,
inserts and patches. Uniqueness of ``external_id`` (payments), of the
``(creator_slug, period_start, period_end)`` triple (payouts) and of ticket
refs is enforced here and reported as ``DuplicateKeyError``. Each call is an
atomic single-document operation; nothing spans documents.
"""

import threading
from bisect import insort
from typing import Iterable, Optional
from uuid import uuid4

from .errors import DuplicateKeyError, StorageError


class InMemoryStorage:
    def __init__(self):
        self.creators: dict[str, dict] = {}
        self.payments: dict[str, dict] = {}
        self.payouts: dict[str, dict] = {}
        self.tickets: dict[str, dict] = {}

        # Indexes
        self.creators_by_account: dict[str, str] = {}
        self.payments_by_external_id: dict[str, str] = {}
        self.payments_by_creator: dict[str, list[tuple[int, str]]] = {}
        self.payouts_by_period: dict[tuple[str, int, int], str] = {}
        self.payouts_by_creator: dict[str, list[tuple[int, str]]] = {}
        self.tickets_by_creator: dict[str, list[str]] = {}

        self._lock = threading.Lock()

    # Creators

    def get_creator(self, slug: str) -> Optional[dict]:
        creator = self.creators.get(slug)
        return dict(creator) if creator else None

    def get_creator_by_account(self, stripe_account_id: str) -> Optional[dict]:
        slug = self.creators_by_account.get(stripe_account_id)
        return self.get_creator(slug) if slug else None

    def insert_creator(self, data: dict) -> str:
        with self._lock:
            if data["slug"] in self.creators:
                raise DuplicateKeyError(f"Creator {data['slug']} already exists")
            self.creators[data["slug"]] = dict(data)
            if data.get("stripe_account_id"):
                self.creators_by_account[data["stripe_account_id"]] = data["slug"]
        return data["slug"]

    def patch_creator(self, slug: str, fields: dict) -> dict:
        with self._lock:
            creator = self.creators.get(slug)
            if creator is None:
                raise StorageError(f"Creator {slug} does not exist")
            previous_account = creator.get("stripe_account_id")
            creator.update(fields)
            if previous_account and previous_account != creator.get("stripe_account_id"):
                self.creators_by_account.pop(previous_account, None)
            if creator.get("stripe_account_id"):
                self.creators_by_account[creator["stripe_account_id"]] = slug
            return dict(creator)

    def list_creator_slugs(self) -> list[str]:
        return sorted(self.creators)

    def list_creators_with_account(self) -> list[dict]:
        slugs = sorted(set(self.creators_by_account.values()))
        return [dict(self.creators[s]) for s in slugs]

    # Payments

    def get_payment_by_external_id(self, external_id: str) -> Optional[dict]:
        payment_id = self.payments_by_external_id.get(external_id)
        if payment_id is None:
            return None
        return dict(self.payments[payment_id])

    def get_payment(self, payment_id: str) -> Optional[dict]:
        payment = self.payments.get(payment_id)
        return dict(payment) if payment else None

    def insert_payment(self, data: dict) -> str:
        with self._lock:
            if data["external_id"] in self.payments_by_external_id:
                raise DuplicateKeyError(f"Payment with external_id {data['external_id']} already exists")
            payment_id = data.get("id") or str(uuid4())
            row = dict(data, id=payment_id)
            self.payments[payment_id] = row
            self.payments_by_external_id[row["external_id"]] = payment_id
            insort(self.payments_by_creator.setdefault(row["creator_slug"], []), (row["created_at"], payment_id))
        return payment_id

    def query_payments(
        self,
        creator_slug: str,
        start: Optional[int] = None,
        end: Optional[int] = None,
        status: Optional[str] = None,
    ) -> list[dict]:
        """Payments for a creator with ``start <= created_at < end``, oldest first."""
        rows = []
        for created_at, payment_id in self.payments_by_creator.get(creator_slug, []):
            if start is not None and created_at < start:
                continue
            if end is not None and created_at >= end:
                break
            row = self.payments[payment_id]
            if status is not None and row["status"] != status:
                continue
            rows.append(dict(row))
        return rows

    # Payouts

    def get_payout_by_period(self, creator_slug: str, period_start: int, period_end: int) -> Optional[dict]:
        payout_id = self.payouts_by_period.get((creator_slug, period_start, period_end))
        if payout_id is None:
            return None
        return dict(self.payouts[payout_id])

    def insert_payout(self, data: dict) -> str:
        key = (data["creator_slug"], data["period_start"], data["period_end"])
        with self._lock:
            if key in self.payouts_by_period:
                raise DuplicateKeyError(f"Payout for {key} already exists")
            payout_id = data.get("id") or str(uuid4())
            row = dict(data, id=payout_id)
            self.payouts[payout_id] = row
            self.payouts_by_period[key] = payout_id
            insort(self.payouts_by_creator.setdefault(row["creator_slug"], []), (row["created_at"], payout_id))
        return payout_id

    def patch_payout(self, payout_id: str, fields: dict) -> dict:
        with self._lock:
            payout = self.payouts.get(payout_id)
            if payout is None:
                raise StorageError(f"Payout {payout_id} does not exist")
            immutable = {"id", "creator_slug", "period_start", "period_end", "created_at"}
            payout.update({k: v for k, v in fields.items() if k not in immutable})
            return dict(payout)

    def list_payouts(self, creator_slug: str, descending: bool = True, take: Optional[int] = None) -> list[dict]:
        index = self.payouts_by_creator.get(creator_slug, [])
        ordered: Iterable[tuple[int, str]] = reversed(index) if descending else index
        rows = []
        for _, payout_id in ordered:
            if take is not None and len(rows) >= take:
                break
            rows.append(dict(self.payouts[payout_id]))
        return rows

    # Tickets

    def get_ticket(self, ref: str) -> Optional[dict]:
        ticket = self.tickets.get(ref)
        return dict(ticket) if ticket else None

    def insert_ticket(self, data: dict) -> str:
        with self._lock:
            if data["ref"] in self.tickets:
                raise DuplicateKeyError(f"Ticket {data['ref']} already exists")
            self.tickets[data["ref"]] = dict(data)
            self.tickets_by_creator.setdefault(data["creator_slug"], []).append(data["ref"])
        return data["ref"]

    def patch_ticket(self, ref: str, fields: dict) -> dict:
        with self._lock:
            ticket = self.tickets.get(ref)
            if ticket is None:
                raise StorageError(f"Ticket {ref} does not exist")
            ticket.update(fields)
            return dict(ticket)

    def list_tickets(self, creator_slug: str, statuses: Optional[Iterable[str]] = None) -> list[dict]:
        wanted = set(statuses) if statuses is not None else None
        rows = []
        for ref in self.tickets_by_creator.get(creator_slug, []):
            row = self.tickets[ref]
            if wanted is not None and row["status"] not in wanted:
                continue
            rows.append(dict(row))
        return rows
