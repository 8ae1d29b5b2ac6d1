"""
Guarantee module - Pure workflow functions for guarantee slots.

This module provides the functions the engine composes:
- Negotiation: quote requests, messages, acceptance, rejection, cancellation
- Escrow: purchase funding, seller approval and rejection
- Settlement: daily rank confirmation and manual completion
- Refunds: seller- and buyer-initiated refunds and their resolution

Every function takes a LedgerView and returns a PendingTransaction.
"""

from .negotiation import (
    RequestTerms,
    FinalTerms,
    create_request,
    post_message,
    accept_offer,
    reject_request,
    cancel_request,
    mark_messages_read,
)

from .escrow import (
    compute_purchase,
    compute_slot_approval,
    compute_slot_rejection,
)

from .settlement import (
    compute_rank_confirmation,
    compute_completion,
)

from .refunds import (
    REFUNDABLE_STATUSES,
    compute_refund_initiation,
    compute_refund_request,
    compute_refund_resolution,
)

__all__ = [
    'RequestTerms', 'FinalTerms',
    'create_request', 'post_message', 'accept_offer',
    'reject_request', 'cancel_request', 'mark_messages_read',
    'compute_purchase', 'compute_slot_approval', 'compute_slot_rejection',
    'compute_rank_confirmation', 'compute_completion',
    'REFUNDABLE_STATUSES',
    'compute_refund_initiation', 'compute_refund_request', 'compute_refund_resolution',
]
