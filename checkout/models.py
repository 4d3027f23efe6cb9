from sqlalchemy import Column, String, Integer
from checkout.database import Base


class PaymentIntentRecord(Base):
    __tablename__ = "payment_intents"

    id = Column(String, primary_key=True)          # Stripe PaymentIntent ID
    amount = Column(Integer)                       # minor units
    currency = Column(String)
    status = Column(String, nullable=False)        # see IntentStatus
    created = Column(Integer)                      # epoch seconds, from Stripe
