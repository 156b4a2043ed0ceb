"""Models package."""

from .user import User
from .generation_credit import GenerationCredit
from .credit_ledger import CreditLedger
from .generated_image import GeneratedImage
from .edition_ticket import EditionTicket
from .poster_purchase import PosterPurchase
from .checkout_session import CheckoutSession
from .order import Order, OrderItem
from .subscription import Subscription
