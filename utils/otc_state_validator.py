"""
OTC State Transition Validator
==============================

Guards every write to Transaction.otc_state so an OTC request can only move
forward through its lifecycle (no COMPLETED -> BIDDING, no leaving FAILED).
"""

import logging
from typing import Dict, Set, Optional, Tuple
from models import OTCState
from utils.otc_errors import StateConflictError

logger = logging.getLogger(__name__)


class StateTransitionError(StateConflictError):
    """Raised when an invalid otc_state transition is attempted"""

    code = "INVALID_STATE_TRANSITION"


class OTCStateValidator:
    """
    Validates OTC state transitions.

    Prevents invalid transitions like:
    - COMPLETED -> AWAITING_FIAT_PAYMENT (reopening a settled trade)
    - OPEN_REQUEST -> AWAITING_FIAT_CONFIRMATION (skipping the deposit)
    - NONE -> anything (plain payments never become OTC trades)
    """

    VALID_TRANSITIONS: Dict[OTCState, Set[OTCState]] = {
        # Plain payments and requests carry no OTC lifecycle
        OTCState.NONE: set(),

        # OPEN_REQUEST: bids arrive (fiat) or a trader deposits directly (USDT)
        OTCState.OPEN_REQUEST: {
            OTCState.BIDDING,
            OTCState.SELECTED_TRADER,
            OTCState.USDT_IN_ESCROW,
        },

        OTCState.BIDDING: {
            OTCState.SELECTED_TRADER,
        },

        # SELECTED_TRADER: waiting for the requester's deposit
        OTCState.SELECTED_TRADER: {
            OTCState.USDT_IN_ESCROW,
        },

        # USDT_IN_ESCROW: waiting for the fiat payer to send fiat
        OTCState.USDT_IN_ESCROW: {
            OTCState.AWAITING_FIAT_CONFIRMATION,
        },

        # AWAITING_FIAT_PAYMENT: fiat was claimed missing
        OTCState.AWAITING_FIAT_PAYMENT: {
            OTCState.AWAITING_FIAT_CONFIRMATION,
            OTCState.FAILED,
        },

        # AWAITING_FIAT_CONFIRMATION: fiat receiver confirms or rejects
        OTCState.AWAITING_FIAT_CONFIRMATION: {
            OTCState.AWAITING_FIAT_PAYMENT,
            OTCState.COMPLETED,
            OTCState.FAILED,
        },

        # Terminal states
        OTCState.COMPLETED: set(),
        OTCState.FAILED: set(),
    }

    TERMINAL_STATES: Set[OTCState] = {
        OTCState.COMPLETED,
        OTCState.FAILED,
    }

    # States in which the deposit sits in the escrow contract
    FUNDS_HELD_STATES: Set[OTCState] = {
        OTCState.USDT_IN_ESCROW,
        OTCState.AWAITING_FIAT_PAYMENT,
        OTCState.AWAITING_FIAT_CONFIRMATION,
    }

    @classmethod
    def validate_transition(
        cls,
        from_state: OTCState,
        to_state: OTCState,
        transaction_id: Optional[str] = None,
    ) -> Tuple[bool, str]:
        """
        Validate if a state transition is allowed.

        Returns:
            Tuple[bool, str]: (is_valid, reason)
        """
        tx_ref = f"Transaction {transaction_id}" if transaction_id else "Transaction"

        if from_state == to_state:
            return True, "No state change required"

        valid_next_states = cls.VALID_TRANSITIONS.get(from_state, set())
        if to_state in valid_next_states:
            logger.info(f"✅ VALID_TRANSITION: {tx_ref} {from_state.value} -> {to_state.value}")
            return True, "Valid state transition"

        error_msg = (
            f"Invalid transition: {from_state.value} -> {to_state.value}. "
            f"Valid transitions from {from_state.value}: "
            f"{sorted(s.value for s in valid_next_states)}"
        )
        logger.error(
            f"❌ INVALID_TRANSITION: {tx_ref} {from_state.value} -> {to_state.value} "
            f"Valid options: {sorted(s.value for s in valid_next_states)}"
        )
        return False, error_msg

    @classmethod
    def validate_and_transition(cls, transaction, new_state: OTCState) -> bool:
        """
        Validate and apply a state transition to a Transaction row.

        Returns:
            bool: True if the state changed, False for a same-state no-op

        Raises:
            StateTransitionError: If the transition is invalid
        """
        current_state = OTCState(transaction.otc_state)
        is_valid, reason = cls.validate_transition(current_state, new_state, transaction.id)
        if not is_valid:
            raise StateTransitionError(
                f"State transition validation failed: {reason}",
                details={"from": current_state.value, "to": new_state.value},
            )

        if current_state == new_state:
            return False

        transaction.otc_state = new_state.value
        logger.info(
            f"🔄 STATE_TRANSITION: {transaction.id} {current_state.value} -> {new_state.value}"
        )
        return True

    @classmethod
    def get_valid_next_states(cls, current_state: OTCState) -> Set[OTCState]:
        """Get all valid next states from the current state"""
        return cls.VALID_TRANSITIONS.get(current_state, set())

    @classmethod
    def is_terminal_state(cls, state: OTCState) -> bool:
        return state in cls.TERMINAL_STATES

    @classmethod
    def has_funds_held(cls, state: OTCState) -> bool:
        """Check if the state means USDT is sitting in the escrow contract"""
        return state in cls.FUNDS_HELD_STATES
