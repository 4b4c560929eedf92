from app.models.ride import Ride
from app.models.payment import PaymentTransaction

__all__ = ["Ride", "PaymentTransaction"]
