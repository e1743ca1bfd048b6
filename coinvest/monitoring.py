# coinvest/monitoring.py
from __future__ import annotations

import time
from typing import Any, Dict, List

from coinvest.core.config import settings
from coinvest.database import check_connection, get_sessionmaker
from coinvest import ledger


def _check(name: str, ok: bool, detail: str = "", extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
    row: Dict[str, Any] = {"name": name, "ok": bool(ok)}
    if detail:
        row["detail"] = detail
    if extra:
        row["extra"] = extra
    return row


def audit_coin_supply(db) -> Dict[str, Any]:
    """Circulating coins must equal coins issued (welcome bonuses + admin supply edits)."""
    supply = ledger.coin_supply(db)
    issued = ledger.issued_supply(db)
    return {
        "ok": supply.total == issued,
        "users": str(supply.users),
        "banks": str(supply.banks),
        "locked_in_bids": str(supply.locked_in_bids),
        "circulating": str(supply.total),
        "issued": str(issued),
    }


def run_selftest(quick: bool = True) -> dict:
    checks: List[Dict[str, Any]] = []

    # --- ENV sanity ---
    checks.append(_check("env:DATABASE_URL", bool(getattr(settings, "DATABASE_URL", None))))
    checks.append(
        _check(
            "env:HOLDING_PERIOD_MULTIPLIERS",
            bool(settings.HOLDING_PERIOD_MULTIPLIERS),
            extra={str(k): str(v) for k, v in settings.HOLDING_PERIOD_MULTIPLIERS.items()},
        )
    )

    # --- DB ---
    db_ok = False
    db_err = ""
    t0 = time.time()
    try:
        check_connection()
        db_ok = True
    except Exception as e:
        db_err = repr(e)

    checks.append(_check("db:select1", db_ok, detail=db_err, extra={"ms": int((time.time() - t0) * 1000)}))

    # --- Conservation audit (full scan, skipped for quick) ---
    if not quick and db_ok:
        audit_err = ""
        audit: Dict[str, Any] = {}
        try:
            db = get_sessionmaker()()
            try:
                audit = audit_coin_supply(db)
            finally:
                db.close()
        except Exception as e:
            audit_err = repr(e)
        checks.append(
            _check("ledger:coin_conservation", bool(audit.get("ok")), detail=audit_err, extra=audit or None)
        )

    status = "ok" if all(c.get("ok") for c in checks) else "degraded"
    return {"status": status, "checks": checks}
