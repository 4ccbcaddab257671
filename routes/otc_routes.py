"""
OTC Feed Routes
FastAPI routes for the payments feed, trader bidding and the escrow
settlement steps.

Caller identity comes from the identity provider's X-User-Id and
X-Wallet-Address headers. Failures are raised as OTCError and mapped to HTTP
statuses by the application's exception handler.
"""

import logging
from typing import Any, Dict, Optional

import orjson
from fastapi import APIRouter, Header, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from services.service_registry import ServiceRegistry
from services.transaction_service import CreateTransactionRequest
from utils.caller_context import CallerContext
from utils.otc_errors import ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["otc"])


def _services(request: Request) -> ServiceRegistry:
    return request.app.state.services


def _caller(x_user_id: Optional[str], x_wallet_address: Optional[str] = None,
            x_request_id: Optional[str] = None) -> CallerContext:
    return CallerContext.from_headers(x_user_id, x_wallet_address, x_request_id)


async def _json_body(request: Request) -> Dict[str, Any]:
    body = await request.body()
    if not body:
        return {}
    try:
        data = orjson.loads(body)
    except orjson.JSONDecodeError:
        raise ValidationError("Request body must be valid JSON")
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _required(data: Dict[str, Any], key: str) -> Any:
    value = data.get(key)
    if value is None or value == "":
        raise ValidationError(f"{key} is required")
    return value


def _created(content: Any) -> JSONResponse:
    return JSONResponse(content=content, status_code=201)


# ============================================================================
# USERS
# ============================================================================

@router.post("/users")
async def register_user(request: Request):
    """Create the local profile for an identity-provider user"""
    data = await _json_body(request)
    user = await run_in_threadpool(
        _services(request).users.register_user,
        _required(data, "id"),
        _required(data, "handle"),
        data.get("name"),
        data.get("walletAddress"),
        bool(data.get("isVerified", False)),
    )
    return _created(user.to_dict())


@router.get("/users/{user_id}")
async def get_user(request: Request, user_id: str):
    user = await run_in_threadpool(_services(request).users.get_user, user_id)
    return user.to_dict()


@router.get("/users/{user_id}/activity")
async def get_user_activity(request: Request, user_id: str, limit: int = Query(100, ge=1, le=500)):
    """Profile activity including mirrored settlement legs"""
    entries = await run_in_threadpool(_services(request).transactions.get_user_activity, user_id, limit)
    return {"userId": user_id, "transactions": [tx.to_dict() for tx in entries]}


# ============================================================================
# TRANSACTIONS
# ============================================================================

@router.post("/transactions")
async def create_transaction(
    request: Request,
    x_user_id: Optional[str] = Header(None),
    x_wallet_address: Optional[str] = Header(None),
    x_request_id: Optional[str] = Header(None),
):
    """Post a payment or request; OTC requests start in OPEN_REQUEST"""
    caller = _caller(x_user_id, x_wallet_address, x_request_id)
    payload = CreateTransactionRequest.from_payload(await _json_body(request))
    transaction = await run_in_threadpool(
        _services(request).transactions.create_transaction, caller, payload
    )
    return _created(transaction.to_dict())


@router.get("/transactions")
async def list_transactions(
    request: Request,
    user_id: Optional[str] = Query(None, alias="userId"),
    tx_type: Optional[str] = Query(None, alias="type"),
    privacy: Optional[str] = Query(None),
    include_activity: bool = Query(False, alias="includeActivity"),
    limit: int = Query(100, ge=1, le=500),
):
    transactions = await run_in_threadpool(
        _services(request).transactions.list_transactions,
        user_id, tx_type, privacy, include_activity, limit,
    )
    return {"transactions": [tx.to_dict() for tx in transactions]}


@router.get("/transactions/{transaction_id}")
async def get_transaction(request: Request, transaction_id: str):
    transaction = await run_in_threadpool(_services(request).transactions.get_transaction, transaction_id)
    return transaction.to_dict(include_bids=True)


@router.patch("/transactions/{transaction_id}")
async def update_transaction(
    request: Request,
    transaction_id: str,
    x_user_id: Optional[str] = Header(None),
    x_request_id: Optional[str] = Header(None),
):
    """Edit note, sticker, privacy or xPostId; OTC fields are rejected"""
    caller = _caller(x_user_id, None, x_request_id)
    fields = await _json_body(request)
    transaction = await run_in_threadpool(
        _services(request).transactions.update_transaction, transaction_id, caller, fields
    )
    return transaction.to_dict(include_bids=True)


@router.post("/transactions/{transaction_id}/replies")
async def add_reply(
    request: Request,
    transaction_id: str,
    x_user_id: Optional[str] = Header(None),
):
    caller = _caller(x_user_id)
    data = await _json_body(request)
    reply = await run_in_threadpool(
        _services(request).transactions.add_reply,
        transaction_id, caller, data.get("text", ""), data.get("proofUrl"),
    )
    return _created(reply.to_dict())


@router.get("/transactions/{transaction_id}/replies")
async def list_replies(request: Request, transaction_id: str):
    replies = await run_in_threadpool(_services(request).transactions.list_replies, transaction_id)
    return {"transactionId": transaction_id, "replies": [r.to_dict() for r in replies]}


@router.post("/transactions/{transaction_id}/like")
async def like_transaction(
    request: Request,
    transaction_id: str,
    x_user_id: Optional[str] = Header(None),
):
    caller = _caller(x_user_id)
    likes = await run_in_threadpool(_services(request).transactions.like_transaction, transaction_id, caller)
    return {"transactionId": transaction_id, "likes": likes}


# ============================================================================
# BIDDING AND TRADER SELECTION
# ============================================================================

@router.post("/transactions/{transaction_id}/bids")
async def create_bid(
    request: Request,
    transaction_id: str,
    x_user_id: Optional[str] = Header(None),
    x_request_id: Optional[str] = Header(None),
):
    """Bid on an open fiat OTC request"""
    caller = _caller(x_user_id, None, x_request_id)
    data = await _json_body(request)
    bid = await run_in_threadpool(
        _services(request).bids.create_bid, transaction_id, caller, data.get("message")
    )
    return _created(bid.to_dict())


@router.get("/transactions/{transaction_id}/bids")
async def list_bids(request: Request, transaction_id: str):
    bids = await run_in_threadpool(_services(request).bids.list_bids, transaction_id)
    return {"transactionId": transaction_id, "bids": [bid.to_dict() for bid in bids]}


@router.delete("/bids/{bid_id}")
async def delete_bid(
    request: Request,
    bid_id: str,
    x_user_id: Optional[str] = Header(None),
):
    caller = _caller(x_user_id)
    await run_in_threadpool(_services(request).bids.delete_bid, bid_id, caller)
    return {"bidId": bid_id, "deleted": True}


@router.post("/transactions/{transaction_id}/select-trader")
async def select_trader(
    request: Request,
    transaction_id: str,
    x_user_id: Optional[str] = Header(None),
    x_request_id: Optional[str] = Header(None),
):
    caller = _caller(x_user_id, None, x_request_id)
    data = await _json_body(request)
    transaction = await run_in_threadpool(
        _services(request).settlement.select_trader, transaction_id, caller, data.get("traderId")
    )
    return transaction.to_dict()


# ============================================================================
# FIAT LEG
# ============================================================================

def _signature_response(result) -> Dict[str, Any]:
    return {
        "transaction": result.transaction.to_dict(),
        "escrowRecord": result.escrow_record.to_dict(),
        "agreed": result.agreed,
        "executed": result.executed,
    }


@router.post("/transactions/{transaction_id}/fiat-sent")
async def mark_fiat_sent(
    request: Request,
    transaction_id: str,
    x_user_id: Optional[str] = Header(None),
    x_wallet_address: Optional[str] = Header(None),
    x_request_id: Optional[str] = Header(None),
):
    """Fiat payer reports the payment as sent, optionally with a proof image"""
    caller = _caller(x_user_id, x_wallet_address, x_request_id)
    data = await _json_body(request)
    result = await run_in_threadpool(
        _services(request).settlement.mark_fiat_sent, transaction_id, caller, data.get("proofUrl")
    )
    return _signature_response(result)


@router.post("/transactions/{transaction_id}/fiat-resubmit")
async def resubmit_fiat_payment(
    request: Request,
    transaction_id: str,
    x_user_id: Optional[str] = Header(None),
    x_request_id: Optional[str] = Header(None),
):
    caller = _caller(x_user_id, None, x_request_id)
    data = await _json_body(request)
    transaction = await run_in_threadpool(
        _services(request).settlement.resubmit_fiat_payment, transaction_id, caller, data.get("proofUrl")
    )
    return transaction.to_dict()


@router.post("/transactions/{transaction_id}/fiat-not-received")
async def claim_fiat_not_received(
    request: Request,
    transaction_id: str,
    x_user_id: Optional[str] = Header(None),
    x_wallet_address: Optional[str] = Header(None),
    x_request_id: Optional[str] = Header(None),
):
    """Fiat receiver reports the payment missing; the second claim proposes a refund"""
    caller = _caller(x_user_id, x_wallet_address, x_request_id)
    result = await run_in_threadpool(
        _services(request).settlement.claim_fiat_not_received, transaction_id, caller
    )
    return {
        "transaction": result.transaction.to_dict(),
        "escrowRecord": result.escrow_record.to_dict(),
        "refundProposed": result.refund_proposed,
        "fiatRejectionCount": result.rejection_count,
        "executed": result.executed,
    }


@router.get("/transactions/{transaction_id}/actions")
async def get_legal_actions(
    request: Request,
    transaction_id: str,
    x_user_id: Optional[str] = Header(None),
):
    """Phase, roles and the actions the caller may take right now"""
    caller = _caller(x_user_id)
    return await run_in_threadpool(_services(request).settlement.trade_status, transaction_id, caller)


@router.post("/transactions/{transaction_id}/replicate-ledger")
async def replicate_ledger(request: Request, transaction_id: str):
    """Create any activity entries a settled trade is still missing"""
    created = await run_in_threadpool(_services(request).settlement.replicate_ledger, transaction_id)
    return {"transactionId": transaction_id, "created": [tx.to_dict() for tx in created]}


# ============================================================================
# ESCROW (MULTISIG)
# ============================================================================

@router.post("/multisig/orders")
async def record_escrow_order(
    request: Request,
    x_user_id: Optional[str] = Header(None),
    x_wallet_address: Optional[str] = Header(None),
    x_request_id: Optional[str] = Header(None),
):
    """Record the createOrder the depositor already executed on-chain"""
    caller = _caller(x_user_id, x_wallet_address, x_request_id)
    data = await _json_body(request)
    record = await run_in_threadpool(
        _services(request).settlement.record_escrow_order,
        _required(data, "transactionId"),
        caller,
        data.get("counterpartyAddress"),
        _required(data, "amount"),
        _required(data, "onchainOrderId"),
    )
    return _created(record.to_dict())


@router.post("/multisig/signatures")
async def record_signature(
    request: Request,
    x_user_id: Optional[str] = Header(None),
    x_wallet_address: Optional[str] = Header(None),
    x_request_id: Optional[str] = Header(None),
):
    """Record a RELEASE (2) or REFUND (1) signature already placed on-chain"""
    caller = _caller(x_user_id, x_wallet_address, x_request_id)
    data = await _json_body(request)
    result = await run_in_threadpool(
        _services(request).settlement.record_signature,
        _required(data, "transactionId"),
        caller,
        _required(data, "choice"),
        data.get("proofUrl"),
    )
    return _signature_response(result)


@router.get("/multisig/{transaction_id}")
async def get_escrow_record(request: Request, transaction_id: str):
    record = await run_in_threadpool(_services(request).settlement.get_escrow_record, transaction_id)
    return record.to_dict()


# ============================================================================
# NOTIFICATIONS
# ============================================================================

@router.get("/notifications")
async def list_notifications(
    request: Request,
    x_user_id: Optional[str] = Header(None),
    include_read: bool = Query(False, alias="includeRead"),
    limit: int = Query(50, ge=1, le=200),
):
    caller = _caller(x_user_id)
    notifications = _services(request).notifications
    items = await run_in_threadpool(notifications.list_notifications, caller.user_id, include_read, limit)
    unread = await run_in_threadpool(notifications.unread_count, caller.user_id)
    return {"notifications": [n.to_dict() for n in items], "unreadCount": unread}


@router.post("/notifications/read-all")
async def mark_all_notifications_read(request: Request, x_user_id: Optional[str] = Header(None)):
    caller = _caller(x_user_id)
    updated = await run_in_threadpool(_services(request).notifications.mark_all_as_read, caller.user_id)
    return {"updated": updated}


@router.post("/notifications/{notification_id}/read")
async def mark_notification_read(
    request: Request,
    notification_id: int,
    x_user_id: Optional[str] = Header(None),
):
    caller = _caller(x_user_id)
    notification = await run_in_threadpool(
        _services(request).notifications.mark_as_read, notification_id, caller.user_id
    )
    return notification.to_dict()


@router.delete("/notifications/{notification_id}")
async def delete_notification(
    request: Request,
    notification_id: int,
    x_user_id: Optional[str] = Header(None),
):
    caller = _caller(x_user_id)
    await run_in_threadpool(_services(request).notifications.delete_notification, notification_id, caller.user_id)
    return {"notificationId": notification_id, "deleted": True}
