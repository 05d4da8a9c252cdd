from bikeshare.models.bike import Bike
from bikeshare.models.reservation import Reservation
from bikeshare.models.unlock_challenge import UnlockChallenge
from bikeshare.models.payment import Payment
from bikeshare.models.loyalty import LoyaltyAccount, LoyaltyLedgerEntry

__all__ = [
    "Bike",
    "Reservation",
    "UnlockChallenge",
    "Payment",
    "LoyaltyAccount",
    "LoyaltyLedgerEntry",
]
