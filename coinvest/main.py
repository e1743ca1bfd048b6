# coinvest/main.py
from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from coinvest import approval_gate, bid_engine, crud, schemas, settlement
from coinvest.core.config import settings
from coinvest.database import db_session, get_db, init_db
from coinvest.errors import CoinvestError, UserNotFound
from coinvest.monitoring import run_selftest

logger = logging.getLogger(__name__)

app = FastAPI(title="Coinvest Auction Core")

_scheduler: Optional[settlement.SettlementScheduler] = None


@app.on_event("startup")
async def startup_event():
    global _scheduler
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # DB first, then the scheduler that depends on it
    try:
        init_db()
        logger.info("DB initialized")
        with db_session() as db:
            logger.info("Approval inbox loaded with %d bids", approval_gate.inbox.load(db))
    except Exception:
        logger.exception("DB init failed (startup). Continuing to boot app.")

    if settings.SETTLEMENT_ENABLED:
        _scheduler = settlement.SettlementScheduler()
        _scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    if _scheduler is not None:
        _scheduler.shutdown()


@app.exception_handler(CoinvestError)
async def coinvest_error_handler(request: Request, exc: CoinvestError):
    if exc.http_status >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse({"error": exc.code, "detail": exc.message}, status_code=exc.http_status)


@app.get("/")
async def root():
    return {"message": "Coinvest auction core is running"}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/ready")
def ready():
    result = run_selftest(quick=True)
    return {"status": result.get("status", "unknown"), "checks": result.get("checks", [])}


@app.get("/selftest")
def selftest():
    return run_selftest(quick=False)


# -------- Users --------

@app.post("/users", response_model=schemas.UserOut, status_code=201)
def register_user(body: schemas.UserCreate, db: Session = Depends(get_db)):
    user = crud.register_user(db, email=body.email, full_name=body.full_name, phone=body.phone)
    return schemas.UserOut.model_validate(user)


@app.get("/users/{email}", response_model=schemas.UserOut)
def get_user(email: str, db: Session = Depends(get_db)):
    user = crud.get_user(db, email)
    if user is None:
        raise UserNotFound(f"no user {email}")
    return schemas.UserOut.model_validate(user)


@app.post("/users/{email}/deactivate", response_model=schemas.UserOut)
def deactivate_user(email: str, db: Session = Depends(get_db)):
    return schemas.UserOut.model_validate(crud.deactivate_user(db, email))


# -------- Banks --------

@app.post("/banks", response_model=schemas.BankAccountOut, status_code=201)
def create_bank_account(body: schemas.BankAccountCreate, db: Session = Depends(get_db)):
    bank = crud.create_bank_account(db, **body.model_dump())
    return schemas.BankAccountOut.model_validate(bank)


@app.get("/banks", response_model=List[schemas.BankAccountOut])
def list_bank_accounts(db: Session = Depends(get_db)):
    return [schemas.BankAccountOut.model_validate(x) for x in crud.list_bank_accounts(db)]


@app.post("/banks/{bank_name}/coins", response_model=schemas.BankAccountOut)
def adjust_bank_coins(bank_name: str, body: schemas.CoinAdjustment, db: Session = Depends(get_db)):
    bank = crud.adjust_bank_coins(db, bank_name=bank_name, delta=body.delta, admin_id=body.admin_id, note=body.note)
    return schemas.BankAccountOut.model_validate(bank)


# -------- Lots --------

@app.post("/lots", response_model=schemas.LotOut, status_code=201)
def publish_lot(body: schemas.LotCreate, db: Session = Depends(get_db)):
    lot = crud.publish_lot(db, **body.model_dump())
    return schemas.LotOut.model_validate(lot)


@app.get("/lots", response_model=List[schemas.LotOut])
def list_lots(status: Optional[str] = None, db: Session = Depends(get_db)):
    return [schemas.LotOut.model_validate(x) for x in crud.list_lots(db, status=status)]


@app.post("/lots/{lot_number}/close", response_model=schemas.LotOut)
def close_lot(lot_number: str, db: Session = Depends(get_db)):
    return schemas.LotOut.model_validate(crud.close_lot(db, lot_number))


# -------- Bids --------

@app.post("/bids", response_model=schemas.BidOut, status_code=201)
def place_bid(body: schemas.BidCreate, db: Session = Depends(get_db)):
    bid = bid_engine.place_bid(
        db,
        user_email=body.user_email,
        lot_number=body.lot_number,
        amount=body.amount,
        holding_period=body.holding_period,
    )
    return schemas.BidOut.model_validate(bid)


@app.get("/bids", response_model=List[schemas.BidOut])
def list_bids(
    user_email: Optional[str] = None,
    status: Optional[str] = None,
    lot_number: Optional[str] = None,
    db: Session = Depends(get_db),
):
    rows = crud.list_bids(db, user_email=user_email, status=status, lot_number=lot_number)
    return [schemas.BidOut.model_validate(x) for x in rows]


@app.get("/bids/{bid_number}", response_model=schemas.BidOut)
def get_bid(bid_number: str, db: Session = Depends(get_db)):
    return schemas.BidOut.model_validate(crud.require_bid(db, bid_number))


@app.post("/bids/{bid_number}/claim", response_model=schemas.ApprovalOut, status_code=201)
def claim_payment(bid_number: str, body: schemas.PaymentClaim, db: Session = Depends(get_db)):
    approval = approval_gate.claim_payment(
        db,
        bid_number=bid_number,
        reference_number=body.reference_number,
        payer_email=body.payer_email,
        amount=body.amount,
        payment_proof_url=body.payment_proof_url,
    )
    return schemas.ApprovalOut.model_validate(approval)


# -------- Approvals --------

@app.get("/approvals", response_model=List[schemas.ApprovalOut])
def list_approvals(
    status: Optional[str] = "pending",
    payer_email: Optional[str] = None,
    db: Session = Depends(get_db),
):
    rows = crud.list_approvals(db, status=status or None, payer_email=payer_email)
    return [schemas.ApprovalOut.model_validate(x) for x in rows]


@app.get("/approvals/inbox", response_model=List[schemas.InboxItemOut])
def approval_inbox(db: Session = Depends(get_db)):
    return [schemas.InboxItemOut.model_validate(x) for x in approval_gate.inbox.pending(db)]


@app.post("/approvals/{approval_id}/decision", response_model=schemas.BidOut)
def decide(approval_id: int, body: schemas.Decision, db: Session = Depends(get_db)):
    bid = approval_gate.decide(db, approval_id=approval_id, decision=body.decision, admin_id=body.admin_id)
    return schemas.BidOut.model_validate(bid)


# -------- Settlement --------

@app.post("/settlement/run", response_model=schemas.SettlementOut)
def run_settlement(body: Optional[schemas.SettlementRun] = None, db: Session = Depends(get_db)):
    result = settlement.mature_due(db, now=(body.now if body else None))
    return schemas.SettlementOut.model_validate(result)


# -------- Support chats --------

@app.post("/support-chats", response_model=schemas.SupportChatOut, status_code=201)
def open_support_chat(body: schemas.SupportChatCreate, db: Session = Depends(get_db)):
    chat = crud.open_support_chat(db, user_email=body.user_email, issue=body.issue, bid_number=body.bid_number)
    return schemas.SupportChatOut.model_validate(chat)


@app.get("/support-chats", response_model=List[schemas.SupportChatOut])
def list_support_chats(
    user_email: Optional[str] = None,
    status: Optional[str] = None,
    db: Session = Depends(get_db),
):
    rows = crud.list_support_chats(db, user_email=user_email, status=status)
    return [schemas.SupportChatOut.model_validate(x) for x in rows]


@app.post("/support-chats/{chat_id}/messages", response_model=schemas.SupportChatOut)
def post_chat_message(chat_id: int, body: schemas.ChatMessage, db: Session = Depends(get_db)):
    chat = crud.post_chat_message(db, chat_id=chat_id, sender=body.sender, text=body.text)
    return schemas.SupportChatOut.model_validate(chat)


@app.post("/support-chats/{chat_id}/close", response_model=schemas.SupportChatOut)
def close_support_chat(chat_id: int, db: Session = Depends(get_db)):
    return schemas.SupportChatOut.model_validate(crud.close_support_chat(db, chat_id))
