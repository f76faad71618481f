"""
🎭 Fake customer data
=====================
Faker-backed customer profiles, order bodies and reservation requests for
virtual users. Card numbers are the public processor test numbers only.
"""

import random
from dataclasses import dataclass
from typing import Optional, List, Dict, Any

from faker import Faker

fake = Faker("en_US")

TEST_CREDIT_CARDS = [
    ("4111111111111111", "visa"),
    ("4012888888881881", "visa"),
    ("5555555555554444", "mastercard"),
    ("5105105105105100", "mastercard"),
    ("2223003122003222", "mastercard"),
    ("378282246310005", "amex"),
    ("371449635398431", "amex"),
    ("6011111111111117", "discover"),
    ("6011000990139424", "discover"),
]

SPECIAL_REQUESTS = [
    "",
    "Window table if available",
    "Celebrating anniversary",
    "Birthday celebration",
    "Quiet table please",
    "High chair needed",
    "Allergy to nuts",
    "Vegetarian options needed",
    "Business dinner",
    "Gluten-free options needed",
]

# party sizes 2..8, weighted toward small tables
PARTY_SIZE_WEIGHTS = [0.35, 0.25, 0.20, 0.10, 0.05, 0.03, 0.02]


@dataclass
class CustomerProfile:
    first_name: str
    last_name: str
    email: str
    phone: str
    address: Dict[str, str]
    card_number: str
    card_type: str
    card_expiry: str
    user_agent: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def masked_card(self) -> str:
        return f"****{self.card_number[-4:]}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "firstName": self.first_name,
            "lastName": self.last_name,
            "fullName": self.full_name,
            "email": self.email,
            "phone": self.phone,
            "address": dict(self.address),
            "creditCard": {"type": self.card_type, "last4": self.card_number[-4:], "expiry": self.card_expiry},
        }


def customer_profile(rng: Optional[random.Random] = None) -> CustomerProfile:
    rng = rng or random
    first, last = fake.first_name(), fake.last_name()
    number, card_type = rng.choice(TEST_CREDIT_CARDS)
    return CustomerProfile(
        first_name=first,
        last_name=last,
        email=f"{first}.{last}{rng.randint(1, 999)}@{fake.free_email_domain()}".lower(),
        phone=fake.numerify("(###) ###-####"),
        address={
            "street": fake.street_address(),
            "city": fake.city(),
            "state": fake.state_abbr(),
            "zipCode": fake.zipcode(),
        },
        card_number=number,
        card_type=card_type,
        card_expiry=fake.credit_card_expire(),
        user_agent=fake.user_agent(),
    )


def order_type(rng: Optional[random.Random] = None) -> str:
    return "delivery" if (rng or random).random() < 0.7 else "pickup"


def party_size(rng: Optional[random.Random] = None) -> int:
    sizes = list(range(2, 2 + len(PARTY_SIZE_WEIGHTS)))
    return (rng or random).choices(sizes, weights=PARTY_SIZE_WEIGHTS, k=1)[0]


def order_payload(
    customer: CustomerProfile,
    cart: List[Dict[str, Any]],
    session_id: str,
    rng: Optional[random.Random] = None,
) -> Dict[str, Any]:
    """Body for POST /api/orders, shaped like the checkout page sends it."""
    total = round(sum(item["price"] * item["quantity"] for item in cart), 2)
    return {
        "customerName": customer.full_name,
        "customerEmail": customer.email,
        "customerPhone": customer.phone,
        "items": [
            {"productId": item["id"], "name": item["name"], "price": item["price"], "quantity": item["quantity"]}
            for item in cart
        ],
        "total": total,
        "orderType": order_type(rng),
        "deliveryAddress": customer.address,
        "paymentMethod": customer.card_type,
        "sessionId": session_id,
    }


def reservation_payload(customer: CustomerProfile, rng: Optional[random.Random] = None) -> Dict[str, Any]:
    rng = rng or random
    return {
        "customerName": customer.full_name,
        "customerEmail": customer.email,
        "customerPhone": customer.phone,
        "partySize": party_size(rng),
        "date": fake.future_date(end_date="+30d").isoformat(),
        "time": f"{rng.randint(17, 21)}:{rng.choice(['00', '15', '30', '45'])}",
        "specialRequests": rng.choice(SPECIAL_REQUESTS),
    }
