"""
OTC action table
================

One table answers both "may this caller do X now?" (enforced by the
settlement engine) and "what can this caller do now?" (served to clients).
Each rule names the roles allowed per variant, the otc_states it applies to,
an optional phase filter and an optional guard on the surrounding data.

Checks always run role first, then state, so an outsider gets a 403 before
learning anything about the trade's progress.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional, Set

from models import Transaction, EscrowRecord, OTCState, SignatureChoice
from utils.otc_errors import AuthorizationError, StateConflictError
from utils.otc_roles import (
    OTCVariant, Role, SettlementPhase,
    variant_of, resolve_roles, settlement_phase, slot_for, slot_signature, fiat_payer_id,
)

logger = logging.getLogger(__name__)


class Action(Enum):
    PLACE_BID = "PLACE_BID"
    WITHDRAW_BID = "WITHDRAW_BID"
    SELECT_TRADER = "SELECT_TRADER"
    RECORD_ESCROW_ORDER = "RECORD_ESCROW_ORDER"
    MARK_FIAT_SENT = "MARK_FIAT_SENT"                   # Fiat payer signs RELEASE
    RESUBMIT_FIAT_PAYMENT = "RESUBMIT_FIAT_PAYMENT"     # Fiat payer re-asserts after a rejection
    CONFIRM_FIAT_RECEIVED = "CONFIRM_FIAT_RECEIVED"     # Fiat receiver signs RELEASE
    CLAIM_FIAT_NOT_RECEIVED = "CLAIM_FIAT_NOT_RECEIVED"
    AGREE_REFUND = "AGREE_REFUND"                       # Fiat payer counter-signs REFUND


@dataclass
class ActionContext:
    """Everything a rule needs to judge one caller against one transaction"""
    transaction: Transaction
    escrow: Optional[EscrowRecord]
    user_id: Optional[str]
    bidder_ids: Set[str] = field(default_factory=set)

    @property
    def variant(self) -> OTCVariant:
        return variant_of(self.transaction)

    @property
    def roles(self) -> FrozenSet[Role]:
        return resolve_roles(self.transaction, self.user_id)

    @property
    def phase(self) -> SettlementPhase:
        return settlement_phase(self.transaction, self.escrow)


def _fiat_payer_signature(ctx: ActionContext):
    slot = slot_for(ctx.transaction, fiat_payer_id(ctx.transaction))
    if ctx.escrow is None or slot is None:
        return False, SignatureChoice.NONE
    return slot_signature(ctx.escrow, slot)


@dataclass(frozen=True)
class TransitionRule:
    action: Action
    roles: Dict[OTCVariant, FrozenSet[Role]]
    states: Dict[OTCVariant, FrozenSet[OTCState]]
    role_message: str
    state_message: str
    phases: Optional[FrozenSet[SettlementPhase]] = None
    guard: Optional[Callable[[ActionContext], bool]] = None


def _both(value):
    return {OTCVariant.FIAT_REQUEST: value, OTCVariant.USDT_REQUEST: value}


_OPEN = frozenset({OTCState.OPEN_REQUEST, OTCState.BIDDING})
_FIAT_ONLY_OPEN = {OTCVariant.FIAT_REQUEST: _OPEN, OTCVariant.USDT_REQUEST: frozenset()}


TRANSITION_RULES: Dict[Action, TransitionRule] = {
    Action.PLACE_BID: TransitionRule(
        action=Action.PLACE_BID,
        roles=_both(frozenset({Role.NON_OWNER})),
        states=_FIAT_ONLY_OPEN,
        role_message="You cannot bid on your own request",
        state_message="Bids are only accepted on open fiat requests",
        guard=lambda ctx: ctx.user_id not in ctx.bidder_ids,
    ),
    Action.WITHDRAW_BID: TransitionRule(
        action=Action.WITHDRAW_BID,
        roles=_both(frozenset({Role.NON_OWNER})),
        states=_FIAT_ONLY_OPEN,
        role_message="Only the bidder can withdraw a bid",
        state_message="Bids can only be withdrawn while the request is open",
        guard=lambda ctx: ctx.user_id in ctx.bidder_ids,
    ),
    Action.SELECT_TRADER: TransitionRule(
        action=Action.SELECT_TRADER,
        roles={
            OTCVariant.FIAT_REQUEST: frozenset({Role.REQUESTER}),
            OTCVariant.USDT_REQUEST: frozenset({Role.PROSPECTIVE_TRADER}),
        },
        states=_both(_OPEN),
        role_message="Only the requester can select a trader",
        state_message="A trader can only be selected while the request is open",
        guard=lambda ctx: ctx.variant == OTCVariant.USDT_REQUEST or bool(ctx.bidder_ids),
    ),
    Action.RECORD_ESCROW_ORDER: TransitionRule(
        action=Action.RECORD_ESCROW_ORDER,
        roles={
            OTCVariant.FIAT_REQUEST: frozenset({Role.DEPOSITOR}),
            OTCVariant.USDT_REQUEST: frozenset({Role.DEPOSITOR, Role.PROSPECTIVE_TRADER}),
        },
        states={
            OTCVariant.FIAT_REQUEST: frozenset({OTCState.SELECTED_TRADER}),
            OTCVariant.USDT_REQUEST: frozenset({OTCState.OPEN_REQUEST}),
        },
        role_message="Only the depositing party can record the escrow order",
        state_message="The escrow order can only be recorded once a trader is engaged",
        guard=lambda ctx: ctx.escrow is None,
    ),
    Action.MARK_FIAT_SENT: TransitionRule(
        action=Action.MARK_FIAT_SENT,
        roles=_both(frozenset({Role.FIAT_PAYER})),
        states=_both(frozenset({OTCState.USDT_IN_ESCROW, OTCState.AWAITING_FIAT_PAYMENT})),
        role_message="Only the fiat payer can mark the fiat as sent",
        state_message="Fiat can only be marked as sent while USDT is in escrow",
        guard=lambda ctx: not _fiat_payer_signature(ctx)[0],
    ),
    Action.RESUBMIT_FIAT_PAYMENT: TransitionRule(
        action=Action.RESUBMIT_FIAT_PAYMENT,
        roles=_both(frozenset({Role.FIAT_PAYER})),
        states=_both(frozenset({OTCState.AWAITING_FIAT_PAYMENT})),
        role_message="Only the fiat payer can resubmit the fiat payment",
        state_message="A fiat payment can only be resubmitted after it was reported missing",
        guard=lambda ctx: _fiat_payer_signature(ctx) == (True, SignatureChoice.RELEASE),
    ),
    Action.CONFIRM_FIAT_RECEIVED: TransitionRule(
        action=Action.CONFIRM_FIAT_RECEIVED,
        roles=_both(frozenset({Role.FIAT_RECEIVER})),
        states=_both(frozenset({OTCState.AWAITING_FIAT_CONFIRMATION})),
        role_message="Only the fiat receiver can confirm the fiat payment",
        state_message="Fiat receipt can only be confirmed after the payer marked it as sent",
    ),
    Action.CLAIM_FIAT_NOT_RECEIVED: TransitionRule(
        action=Action.CLAIM_FIAT_NOT_RECEIVED,
        roles=_both(frozenset({Role.FIAT_RECEIVER})),
        states=_both(frozenset({OTCState.AWAITING_FIAT_CONFIRMATION})),
        role_message="Only the fiat receiver can report fiat as not received",
        state_message="Fiat can only be reported missing after the payer marked it as sent",
    ),
    Action.AGREE_REFUND: TransitionRule(
        action=Action.AGREE_REFUND,
        roles=_both(frozenset({Role.FIAT_PAYER})),
        states=_both(frozenset({OTCState.AWAITING_FIAT_PAYMENT, OTCState.AWAITING_FIAT_CONFIRMATION})),
        phases=frozenset({SettlementPhase.REFUND_PROPOSED}),
        role_message="Only the fiat payer can agree to the refund",
        state_message="There is no refund request to agree to",
    ),
}


def authorize(action: Action, ctx: ActionContext) -> None:
    """Raise AuthorizationError unless the caller holds a role the action accepts"""
    rule = TRANSITION_RULES[action]
    allowed = rule.roles[ctx.variant]
    if not (ctx.roles & allowed):
        logger.warning(
            f"🚫 ACTION_FORBIDDEN: {action.value} on {ctx.transaction.id} by {ctx.user_id} "
            f"(roles={sorted(r.value for r in ctx.roles)})"
        )
        raise AuthorizationError(rule.role_message, details={"action": action.value})


def _state_allows(rule: TransitionRule, ctx: ActionContext) -> bool:
    if not ctx.transaction.is_otc:
        return False
    if OTCState(ctx.transaction.otc_state) not in rule.states[ctx.variant]:
        return False
    if rule.phases is not None and ctx.phase not in rule.phases:
        return False
    if rule.guard is not None and not rule.guard(ctx):
        return False
    return True


def require_state(action: Action, ctx: ActionContext) -> None:
    """Raise StateConflictError unless the trade is in a state the action accepts"""
    rule = TRANSITION_RULES[action]
    if not _state_allows(rule, ctx):
        logger.warning(
            f"⚠️ ACTION_STATE_CONFLICT: {action.value} on {ctx.transaction.id} "
            f"in {ctx.transaction.otc_state}/{ctx.phase.value}"
        )
        raise StateConflictError(
            rule.state_message,
            details={
                "action": action.value,
                "otcState": ctx.transaction.otc_state,
                "phase": ctx.phase.value,
            },
        )


def require(action: Action, ctx: ActionContext) -> None:
    authorize(action, ctx)
    require_state(action, ctx)


def legal_actions(ctx: ActionContext) -> List[Action]:
    """Actions the caller may take right now, in table order"""
    allowed = []
    for action, rule in TRANSITION_RULES.items():
        if not (ctx.roles & rule.roles[ctx.variant]):
            continue
        if _state_allows(rule, ctx):
            allowed.append(action)
    return allowed
