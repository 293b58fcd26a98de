from roombook.services.availability import AvailabilityQuery
from roombook.services.cancellation import (
    CancellationCandidate,
    CancellationJournal,
    CancellationSettlement,
    RefundQuote,
)
from roombook.services.compensation import CompensationQueue
from roombook.services.payment import DebitReceipt, PaymentSettlement
from roombook.services.pricing import Price, PriceCalculator
from roombook.services.reservation import (
    OwnershipRecord,
    ReservationCommitter,
    ReservationIndex,
)

__all__ = [
    "AvailabilityQuery",
    "CancellationCandidate",
    "CancellationJournal",
    "CancellationSettlement",
    "CompensationQueue",
    "DebitReceipt",
    "OwnershipRecord",
    "PaymentSettlement",
    "Price",
    "PriceCalculator",
    "RefundQuote",
    "ReservationCommitter",
    "ReservationIndex",
]
