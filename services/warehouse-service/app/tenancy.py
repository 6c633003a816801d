"""
Tenant routing for the warehouse service.

Each marketplace company (warehouse operator) has its own database. The
`X-Company-Id` header selects it through the control-plane `companies` table.
The company id also ends up in cache keys and rate-book keys, so it is held
to a strict format before anything else sees it.
"""
from __future__ import annotations

import logging
import os
import re
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Header, HTTPException
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .errors import UpstreamError
from .models import Base

CONTROL_PLANE_DATABASE_URL = os.getenv(
    "CONTROL_PLANE_DATABASE_URL",
    "sqlite+pysqlite:///./control-plane.db",
)
TENANT_DATABASE_URL_TEMPLATE = os.getenv(
    "TENANT_DATABASE_URL_TEMPLATE",
    "sqlite+pysqlite:///./warehouse_tenant_{db}.db",
)

# Letters, digits, "-" and "_"; no glob or path characters.
_IDENT_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")

logger = logging.getLogger(__name__)


@lru_cache(maxsize=32)
def _control_plane_engine() -> Engine:
    return create_engine(CONTROL_PLANE_DATABASE_URL, pool_pre_ping=True)


@lru_cache(maxsize=256)
def tenant_engine(tenant_db: str) -> Engine:
    url = TENANT_DATABASE_URL_TEMPLATE.format(db=tenant_db)
    eng = create_engine(url, pool_pre_ping=True)
    Base.metadata.create_all(eng)
    logger.info("Opened warehouse tenant database %s", tenant_db)
    return eng


def _lookup_tenant_db(company_id: str) -> str:
    # control-plane table owned by the account service: companies(id, tenant_db)
    try:
        with _control_plane_engine().connect() as conn:
            r = conn.execute(text("SELECT tenant_db FROM companies WHERE id = :id"), {"id": company_id}).fetchone()
    except SQLAlchemyError as e:
        logger.error("Control plane lookup failed for company %s: %s", company_id, e)
        raise UpstreamError("Control plane unavailable") from e

    if r is None or not r[0]:
        raise HTTPException(status_code=400, detail="Unknown company_id")
    tenant_db = str(r[0]).strip()
    if not _IDENT_RE.match(tenant_db):
        # formatted into a database URL below
        logger.error("Control plane returned malformed tenant_db %r for company %s", tenant_db, company_id)
        raise UpstreamError("Tenant database is misconfigured")
    return tenant_db


def get_company_id(x_company_id: Annotated[str | None, Header()] = None) -> str:
    company_id = (x_company_id or "").strip()
    if not company_id:
        raise HTTPException(status_code=400, detail="Missing X-Company-Id header")
    if not _IDENT_RE.match(company_id):
        raise HTTPException(status_code=400, detail="Invalid X-Company-Id header")
    return company_id


def get_tenant_db(company_id: Annotated[str, Depends(get_company_id)]) -> str:
    tenant_db = _lookup_tenant_db(company_id)
    logger.debug("Company %s routed to tenant database %s", company_id, tenant_db)
    return tenant_db


def get_tenant_engine(tenant_db: Annotated[str, Depends(get_tenant_db)]) -> Engine:
    return tenant_engine(tenant_db)
