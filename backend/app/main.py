"""FastAPI application: WebSocket room endpoint plus wallet, withdrawal and round REST endpoints."""

import hmac
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import (
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Request,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from app import redis_client
from app.config import load_room_configs
from app.exceptions import (
    BingoError,
    InsufficientFunds,
    NotInRoom,
    StorageUnavailable,
    UnknownRoom,
    UnknownWithdrawal,
    WithdrawalNotPending,
)
from app.ledger import Ledger, RedisLedger, is_reserved_account
from app.models import (
    ConvertCoinsRequest,
    DepositRequest,
    ErrorResponse,
    HistoryResponse,
    RoundSummary,
    TransactionKind,
    WalletResponse,
    Withdrawal,
    WithdrawalsResponse,
    WithdrawalStatus,
    WithdrawRequest,
)
from app.registry import RoomRegistry
from app.round_store import RoundStore
from app.timer import RoundTimer
from app.withdrawals import WithdrawalDesk
from app.ws_manager import ConnectionManager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    client = await redis_client.get_redis()
    connections = ConnectionManager()
    ledger = RedisLedger(client)
    round_store = RoundStore(client)
    withdrawals = WithdrawalDesk(client, ledger)
    registry = RoomRegistry.build(load_room_configs(), ledger, connections, round_store)

    app.state.connections = connections
    app.state.ledger = ledger
    app.state.round_store = round_store
    app.state.withdrawals = withdrawals
    app.state.registry = registry

    # Start the round timer that drives every room's phase changes
    timer = RoundTimer(registry)
    timer.start()
    yield
    timer.stop()
    await redis_client.close()


app = FastAPI(title="Bingo Rooms API", lifespan=lifespan)

# ---------- Rate Limiting ----------

_rate_limit_enabled = os.getenv("RATE_LIMIT_ENABLED", "1") != "0"

limiter = Limiter(
    key_func=get_remote_address,
    enabled=_rate_limit_enabled,
)
app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def _rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"detail": "Rate limit exceeded. Please slow down."},
    )


def _status_for(exc: BingoError) -> int:
    if isinstance(exc, StorageUnavailable):
        return 503
    if isinstance(exc, (UnknownRoom, NotInRoom, UnknownWithdrawal)):
        return 404
    if isinstance(exc, InsufficientFunds):
        return 402
    if isinstance(exc, WithdrawalNotPending):
        return 409
    return 400


@app.exception_handler(BingoError)
async def _bingo_error_handler(request: Request, exc: BingoError):
    return JSONResponse(
        status_code=_status_for(exc),
        content={"detail": str(exc), "code": exc.code},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # tighten in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------- Dependencies ----------


def get_registry(request: Request) -> RoomRegistry:
    return request.app.state.registry


def get_ledger(request: Request) -> Ledger:
    return request.app.state.ledger


def get_round_store(request: Request) -> RoundStore:
    return request.app.state.round_store


def get_withdrawals(request: Request) -> WithdrawalDesk:
    return request.app.state.withdrawals


# ---------- Admin Auth ----------

ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "")


async def verify_admin(authorization: str | None = Header(None)):
    """Validate the admin password from the Authorization header."""
    if not ADMIN_PASSWORD:
        raise HTTPException(
            status_code=503,
            detail="Admin not configured. Set ADMIN_PASSWORD env var.",
        )
    expected = f"Bearer {ADMIN_PASSWORD}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        raise HTTPException(status_code=401, detail="Invalid admin password")


# ---------- Participant ids ----------


def participant_path(participant_id: str) -> str:
    """Reject path ids that name an internal account such as the house."""
    if is_reserved_account(participant_id):
        raise HTTPException(status_code=400, detail="Reserved participant id")
    return participant_id


def _errors(*codes: int) -> dict[int | str, dict[str, Any]]:
    return {code: {"model": ErrorResponse} for code in codes}


# ---------- Rooms ----------


@app.get("/api/rooms")
@limiter.limit("30/minute")
async def list_rooms(request: Request, registry: RoomRegistry = Depends(get_registry)):
    return {"rooms": registry.snapshots()}


@app.get("/api/rooms/{stake}", responses=_errors(404))
@limiter.limit("30/minute")
async def get_room(request: Request, stake: int, registry: RoomRegistry = Depends(get_registry)):
    return registry.get(stake).snapshot()


# ---------- Wallets ----------


@app.get("/api/wallets/{participant_id}", response_model=WalletResponse, responses=_errors(503))
@limiter.limit("30/minute")
async def get_wallet(
    request: Request,
    participant_id: str = Depends(participant_path),
    ledger: Ledger = Depends(get_ledger),
):
    balance = await ledger.get_balance(participant_id)
    return WalletResponse(participant_id=participant_id, **balance.model_dump())


@app.get(
    "/api/wallets/{participant_id}/history",
    response_model=HistoryResponse,
    responses=_errors(503),
)
@limiter.limit("30/minute")
async def get_wallet_history(
    request: Request,
    participant_id: str = Depends(participant_path),
    kind: Optional[TransactionKind] = None,
    limit: int = 50,
    ledger: Ledger = Depends(get_ledger),
):
    limit = max(1, min(limit, 200))
    transactions = await ledger.history(participant_id, kind=kind, limit=limit)
    return HistoryResponse(participant_id=participant_id, transactions=transactions)


@app.post(
    "/api/wallets/{participant_id}/convert",
    response_model=WalletResponse,
    responses=_errors(402, 503),
)
@limiter.limit("10/minute")
async def convert_coins(
    request: Request,
    req: ConvertCoinsRequest,
    participant_id: str = Depends(participant_path),
    ledger: Ledger = Depends(get_ledger),
):
    balance = await ledger.convert_coins(participant_id, req.coins)
    return WalletResponse(participant_id=participant_id, **balance.model_dump())


@app.post(
    "/api/wallets/{participant_id}/withdraw",
    response_model=Withdrawal,
    responses=_errors(400, 402, 503),
)
@limiter.limit("5/minute")
async def request_withdrawal(
    request: Request,
    req: WithdrawRequest,
    participant_id: str = Depends(participant_path),
    withdrawals: WithdrawalDesk = Depends(get_withdrawals),
):
    """Hold main balance for an operator-approved payout."""
    return await withdrawals.request(participant_id, req.amount, req.destination)


# ---------- Rounds ----------


@app.get("/api/rounds")
@limiter.limit("30/minute")
async def list_rounds(
    request: Request, limit: int = 20, round_store: RoundStore = Depends(get_round_store)
):
    rounds = await round_store.recent_rounds(max(1, min(limit, 100)))
    return {"rounds": [r.model_dump() for r in rounds]}


@app.get("/api/rounds/{round_id}", response_model=RoundSummary, responses=_errors(503))
@limiter.limit("30/minute")
async def get_round(
    request: Request, round_id: str, round_store: RoundStore = Depends(get_round_store)
):
    summary = await round_store.load_round_summary(round_id)
    if summary is None:
        raise HTTPException(status_code=404, detail="Round not found")
    return summary


# ---------- Admin ----------


@app.post(
    "/api/admin/wallets/{participant_id}/deposit",
    response_model=WalletResponse,
    responses=_errors(503),
)
@limiter.limit("10/minute")
async def admin_deposit(
    request: Request,
    req: DepositRequest,
    participant_id: str = Depends(participant_path),
    ledger: Ledger = Depends(get_ledger),
    _=Depends(verify_admin),
):
    """Credit a participant's wallet (operator top-up)."""
    await ledger.deposit(participant_id, req.amount, req.balance)
    balance = await ledger.get_balance(participant_id)
    return WalletResponse(participant_id=participant_id, **balance.model_dump())


@app.get("/api/admin/summary")
@limiter.limit("10/minute")
async def admin_summary(
    request: Request, round_store: RoundStore = Depends(get_round_store), _=Depends(verify_admin)
):
    """Rounds, pot volume and house revenue over the last 24 h."""
    return await round_store.get_summary()


@app.post("/api/admin/prune-rounds")
@limiter.limit("10/minute")
async def admin_prune_rounds(
    request: Request, round_store: RoundStore = Depends(get_round_store), _=Depends(verify_admin)
):
    """Delete round summaries past the retention window."""
    return {"deleted": await round_store.prune_old_rounds()}


@app.get("/api/admin/withdrawals", response_model=WithdrawalsResponse, responses=_errors(503))
@limiter.limit("10/minute")
async def admin_list_withdrawals(
    request: Request,
    status: Optional[WithdrawalStatus] = None,
    limit: int = 50,
    withdrawals: WithdrawalDesk = Depends(get_withdrawals),
    _=Depends(verify_admin),
):
    """Withdrawal requests, newest first, optionally filtered by ``status``."""
    found = await withdrawals.list_withdrawals(status, max(1, min(limit, 200)))
    return WithdrawalsResponse(withdrawals=found)


@app.post(
    "/api/admin/withdrawals/{withdrawal_id}/approve",
    response_model=Withdrawal,
    responses=_errors(404, 409, 503),
)
@limiter.limit("10/minute")
async def admin_approve_withdrawal(
    request: Request,
    withdrawal_id: str,
    withdrawals: WithdrawalDesk = Depends(get_withdrawals),
    _=Depends(verify_admin),
):
    return await withdrawals.approve(withdrawal_id)


@app.post(
    "/api/admin/withdrawals/{withdrawal_id}/deny",
    response_model=Withdrawal,
    responses=_errors(404, 409, 503),
)
@limiter.limit("10/minute")
async def admin_deny_withdrawal(
    request: Request,
    withdrawal_id: str,
    withdrawals: WithdrawalDesk = Depends(get_withdrawals),
    _=Depends(verify_admin),
):
    """Reject a withdrawal and return the held amount to the participant."""
    return await withdrawals.deny(withdrawal_id)


# ---------- WebSocket ----------


@app.websocket("/ws/{stake}/{participant_id}")
async def websocket_endpoint(ws: WebSocket, stake: int, participant_id: str):
    # participant_id is supplied by the authenticating proxy in front of this service
    registry: RoomRegistry = ws.app.state.registry
    connections: ConnectionManager = ws.app.state.connections

    try:
        registry.get(stake)
    except UnknownRoom:
        await ws.close(code=4004, reason="Room not found")
        return
    if is_reserved_account(participant_id):
        await ws.close(code=4003, reason="Reserved participant id")
        return

    conn = await connections.connect(stake, participant_id, ws)

    # Send current state immediately on connect (reconnect support)
    try:
        snapshot = await registry.join_room(participant_id, stake)
        await conn.send(json.dumps({"type": "snapshot", "data": snapshot}))
        await connections.broadcast_to_all(stake, json.dumps(connections.get_connection_info(stake)))
    except BingoError as e:
        await conn.send(json.dumps(_error_message(e)))

    try:
        while True:
            raw = await ws.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                continue  # ignore malformed messages
            if not isinstance(msg, dict):
                continue
            reply = await handle_message(registry, participant_id, msg)
            if reply is not None:
                await conn.send(json.dumps(reply))
    except WebSocketDisconnect:
        pass
    finally:
        connections.disconnect(stake, participant_id, conn)
        # A newer connection for the same participant keeps their seat
        if not connections.is_connected(stake, participant_id):
            try:
                await registry.leave(participant_id, stake)
            except BingoError:
                logger.exception("Failed to release %s from room %d", participant_id, stake)
        try:
            await connections.broadcast_to_all(
                stake, json.dumps(connections.get_connection_info(stake))
            )
        except Exception:
            logger.debug("Error broadcasting disconnect for %s in %d", participant_id, stake, exc_info=True)


async def handle_message(
    registry: RoomRegistry, participant_id: str, msg: dict[str, Any]
) -> Optional[dict[str, Any]]:
    """Apply one client message.  Returns the reply for the sender, if any.

    Denials go back to the sender only; the room's broadcasts are unaffected.
    """
    msg_type = msg.get("type", "")
    data = msg.get("data") or {}
    try:
        if msg_type == "select_card":
            try:
                card_number = int(data["card_number"])
            except (KeyError, TypeError, ValueError):
                return {
                    "type": "error",
                    "data": {"code": "INVALID_MESSAGE", "message": "card_number is required"},
                }
            reservation = await registry.select_card(participant_id, card_number)
            return {
                "type": "card_selected",
                "data": {
                    "card_number": reservation.card_number,
                    "released": reservation.released,
                },
            }
        if msg_type == "claim_bingo":
            result = await registry.claim_win(participant_id)
            return {"type": "claim_accepted", "data": result}
        if msg_type == "snapshot":
            room = registry.room_of(participant_id)
            return {"type": "snapshot", "data": room.snapshot(participant_id)}
    except BingoError as e:
        return _error_message(e)
    return None


def _error_message(exc: BingoError) -> dict[str, Any]:
    return {"type": "error", "data": {"code": exc.code, "message": str(exc)}}
