"""
slotledger - Guarantee-Slot Negotiation, Escrow and Settlement

A buyer and a seller negotiate a performance-guaranteed advertising slot,
the buyer funds it into escrow, and funds are released day by day as the
seller confirms the guaranteed search rank, or unwound through a refund.

Usage:
    from datetime import datetime
    from decimal import Decimal
    from slotledger import (
        Ledger, GuaranteeEngine, StaticCampaignCatalog, CampaignTerms,
        RequestTerms, FinalTerms,
    )

    ledger = Ledger("main", datetime(2025, 1, 1, 9))
    catalog = StaticCampaignCatalog([CampaignTerms("camp-1", seller_id="seller")])
    engine = GuaranteeEngine(ledger, catalog)

    engine.deposit("buyer", Decimal("200000"))
    request = engine.create_request("camp-1", "buyer", RequestTerms(target_rank=3, guarantee_count=10))
    engine.accept_negotiation(request.id, "seller", FinalTerms(Decimal("10000"), 10))
    slot = engine.purchase_slot(request.id, "buyer")      # 110,000 escrowed (VAT incl.)
    engine.approve_slot(slot.id, "seller")
    engine.confirm_rank_achievement(slot.id, "seller", achieved_rank=2)
"""

# Core types
from .core import (
    LedgerView,
    Move,
    StateChange,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    build_transaction,
    empty_pending_transaction,
    record_insert,
    record_update,
    Record,
    Unit,
    ExecuteResult,
    LedgerRejection,
    RejectionReason,
    LedgerError,
    InsufficientFunds,
    BalanceConstraintViolation,
    UnitNotRegistered,
    WalletNotRegistered,
    RecordNotFound,
    DuplicateRecord,
    ConcurrentModification,
    InvalidCampaign,
    NotNegotiable,
    RequestNotFundable,
    SlotNotActive,
    AlreadyConfirmedToday,
    NothingToRefund,
    RequestNotPending,
    Unauthorized,
    InvalidAmount,
    currency,
    SYSTEM_WALLET,
    UNIT_TYPE_CASH,
    UNIT_TYPE_FREE_CASH,
    DEFAULT_VAT_RATE,
    DEFAULT_CURRENCY_INCREMENT,
)

# Ledger
from .ledger import Ledger

# Records
from .records import (
    RequestStatus,
    BudgetType,
    MessageKind,
    SlotStatus,
    HoldingStatus,
    RefundStatus,
    Role,
    BalanceEntryType,
    Proposal,
    GuaranteeSlotRequest,
    NegotiationMessage,
    Rejection,
    GuaranteeSlot,
    Holding,
    Settlement,
    RefundRequest,
    BalanceHistoryEntry,
    STATUS_LABELS,
    label,
    escrow_wallet,
)

# Money arithmetic
from .amounts import (
    Rounder,
    round_up_to_currency_unit,
    vat_inclusive_total,
    seller_refund_amount,
    buyer_refund_amount,
    split_refund,
    require_unit_precision,
)

# Collaborators
from .collaborators import (
    CampaignTerms,
    CampaignCatalog,
    Notification,
    Notifier,
    RankChecker,
    InquiryThreads,
    StaticCampaignCatalog,
    RecordingNotifier,
    RecordingRankChecker,
    InMemoryInquiryThreads,
)

# Outbox
from .outbox import (
    OutboxEvent,
    Outbox,
    create_default_outbox,
)

# Workflow functions
from .guarantee import (
    RequestTerms,
    FinalTerms,
)

# Engine
from .config import EngineConfig
from .engine import GuaranteeEngine, BalanceBucket

# Reporting
from .reporting import (
    SlotStats,
    calculate_progress,
    estimate_completion_date,
    summarize,
)

__all__ = [
    # Core
    'LedgerView', 'Move', 'StateChange', 'Transaction', 'PendingTransaction',
    'TransactionOrigin', 'OriginType',
    'build_transaction', 'empty_pending_transaction', 'record_insert', 'record_update',
    'Record', 'Unit', 'ExecuteResult', 'LedgerRejection', 'RejectionReason',
    'LedgerError', 'InsufficientFunds', 'BalanceConstraintViolation',
    'UnitNotRegistered', 'WalletNotRegistered', 'RecordNotFound', 'DuplicateRecord',
    'ConcurrentModification', 'InvalidCampaign', 'NotNegotiable', 'RequestNotFundable',
    'SlotNotActive', 'AlreadyConfirmedToday', 'NothingToRefund', 'RequestNotPending',
    'Unauthorized', 'InvalidAmount',
    'currency', 'SYSTEM_WALLET', 'UNIT_TYPE_CASH', 'UNIT_TYPE_FREE_CASH',
    'DEFAULT_VAT_RATE', 'DEFAULT_CURRENCY_INCREMENT',
    # Ledger
    'Ledger',
    # Records
    'RequestStatus', 'BudgetType', 'MessageKind', 'SlotStatus', 'HoldingStatus',
    'RefundStatus', 'Role', 'BalanceEntryType',
    'Proposal', 'GuaranteeSlotRequest', 'NegotiationMessage', 'Rejection', 'GuaranteeSlot',
    'Holding', 'Settlement', 'RefundRequest', 'BalanceHistoryEntry',
    'STATUS_LABELS', 'label', 'escrow_wallet',
    # Amounts
    'Rounder', 'round_up_to_currency_unit', 'vat_inclusive_total',
    'seller_refund_amount', 'buyer_refund_amount', 'split_refund', 'require_unit_precision',
    # Collaborators
    'CampaignTerms', 'CampaignCatalog', 'Notification', 'Notifier', 'RankChecker',
    'InquiryThreads', 'StaticCampaignCatalog', 'RecordingNotifier', 'RecordingRankChecker',
    'InMemoryInquiryThreads',
    # Outbox
    'OutboxEvent', 'Outbox', 'create_default_outbox',
    # Engine
    'RequestTerms', 'FinalTerms', 'EngineConfig', 'GuaranteeEngine', 'BalanceBucket',
    # Reporting
    'SlotStats', 'calculate_progress', 'estimate_completion_date', 'summarize',
]
