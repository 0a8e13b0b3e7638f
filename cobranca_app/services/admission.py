# cobranca_app/services/admission.py
# -*- coding: utf-8 -*-
"""
Porta de entrada do checkout por boleto: valida o payload e limita
tentativas por e-mail antes de qualquer efeito colateral.
"""
from __future__ import annotations
import threading
import time
from collections import deque
from datetime import datetime
from typing import List, Optional, Union

from flask import current_app
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from ..extensions import db
from ..models import CheckoutAttempt
from ..errors import ValidationError, RateLimited


class CartItem(BaseModel):
    id: Union[str, int]
    name: str = Field(..., min_length=1, max_length=200)
    price: float = Field(..., gt=0, le=1_000_000)
    quantity: int = Field(..., ge=1, le=100)


class Customer(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    phone: Optional[str] = Field(None, max_length=20)
    cpf: Optional[str] = Field(None, max_length=20)

    @field_validator("email")
    @classmethod
    def _email_len(cls, v):
        if len(v) > 255:
            raise ValueError("e-mail muito longo")
        return v


class Coupon(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str = Field(..., min_length=1, max_length=60)
    discount_amount: float = Field(0, ge=0, alias="discountAmount")


class CheckoutRequest(BaseModel):
    items: List[CartItem] = Field(..., min_length=1, max_length=50)
    customer: Customer
    coupon: Optional[Coupon] = None


def validate_checkout(payload) -> CheckoutRequest:
    if not isinstance(payload, dict):
        raise ValidationError("Payload inválido")
    try:
        return CheckoutRequest.model_validate(payload)
    except PydanticValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ()))
        raise ValidationError(f"Dados inválidos: {where} {first.get('msg', '')}".strip())


# ---------------------------------------------------------------------
# Contadores de tentativas
# ---------------------------------------------------------------------
class MemoryAttemptStore:
    """Só serve para um único processo."""

    def __init__(self):
        self._hits = {}
        self._lock = threading.Lock()

    def count_since(self, key: str, since: float) -> int:
        with self._lock:
            q = self._hits.get(key)
            if q is None:
                return 0
            while q and q[0] < since:
                q.popleft()
            if not q:
                del self._hits[key]
            return len(q)

    def record(self, key: str, at: float, prune_before: Optional[float] = None) -> None:
        with self._lock:
            self._hits.setdefault(key, deque()).append(at)
            if prune_before is None:
                return
            for k in [k for k, q in self._hits.items() if q[-1] < prune_before]:
                del self._hits[k]

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)


class DatabaseAttemptStore:
    """Contador na tabela checkout_attempts, compartilhado entre instâncias."""

    def count_since(self, key: str, since: float) -> int:
        cutoff = datetime.utcfromtimestamp(since)
        return (
            CheckoutAttempt.query
            .filter(CheckoutAttempt.customer_email == key, CheckoutAttempt.created_at >= cutoff)
            .count()
        )

    def record(self, key: str, at: float, prune_before: Optional[float] = None) -> None:
        db.session.add(CheckoutAttempt(customer_email=key, created_at=datetime.utcfromtimestamp(at)))
        if prune_before is not None:
            # fora da janela a tentativa não conta mais
            (
                CheckoutAttempt.query
                .filter(CheckoutAttempt.created_at < datetime.utcfromtimestamp(prune_before))
                .delete(synchronize_session=False)
            )
        db.session.commit()


class RateLimiter:
    def __init__(self, store, limit: int = 3, window_seconds: int = 60, clock=time.time):
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds
        self.clock = clock

    def hit(self, key: str) -> None:
        """Registra a tentativa ou levanta RateLimited (sem registrar)."""
        key = (key or "").strip().lower()
        now = self.clock()
        since = now - self.window_seconds
        if self.store.count_since(key, since) >= self.limit:
            raise RateLimited()
        self.store.record(key, now, prune_before=since)


_memory_store = MemoryAttemptStore()


def get_rate_limiter() -> RateLimiter:
    cfg = current_app.config
    kind = cfg.get("BOLETO_RATE_STORE", "database")
    store = _memory_store if kind == "memory" else DatabaseAttemptStore()
    return RateLimiter(
        store,
        limit=int(cfg.get("BOLETO_RATE_LIMIT", 3)),
        window_seconds=int(cfg.get("BOLETO_RATE_WINDOW_SECONDS", 60)),
    )


def admit(payload, limiter: Optional[RateLimiter] = None) -> CheckoutRequest:
    req = validate_checkout(payload)
    limiter = limiter or get_rate_limiter()
    try:
        limiter.hit(req.customer.email)
    except RateLimited:
        current_app.logger.warning("Checkout boleto limitado para %s", req.customer.email)
        raise
    return req
