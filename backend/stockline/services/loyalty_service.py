# Overview: Loyalty accrual calculator plus the manual reward operations behind the customer loyalty routes.

"""
Loyalty points

settle() is pure: it computes what a sale does to a customer's points and
leaves persisting the result to the sale transaction.

Rates are configuration (LoyaltyPolicy.from_config):
- earn: LOYALTY_EARN_POINTS_PER_UNIT points per whole currency unit spent
- redeem: LOYALTY_REDEMPTION_POINTS_PER_UNIT points buy one currency unit
- basis: PRE_REDEMPTION earns on the total before the points discount,
  POST_REDEMPTION on the total after it
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from ..errors import (
    ConflictError,
    InsufficientLoyaltyPointsError,
    NotFoundError,
    ValidationError,
)
from ..extensions import db
from ..models import Customer, LoyaltyReward
from ..time_utils import utcnow
from .concurrency import lock_for_update, run_in_transaction


EARN_BASES = ("PRE_REDEMPTION", "POST_REDEMPTION")
REWARD_TYPES = ("POINTS", "DISCOUNT", "GIFT")


@dataclass(frozen=True)
class LoyaltyPolicy:
    earn_points_per_unit: int = 1
    redemption_points_per_unit: int = 100
    earn_basis: str = "PRE_REDEMPTION"
    reward_ttl_days: int = 365

    def __post_init__(self):
        if self.earn_basis not in EARN_BASES:
            raise ValueError(f"LOYALTY_EARN_BASIS must be one of {', '.join(EARN_BASES)}")
        if self.redemption_points_per_unit <= 0:
            raise ValueError("LOYALTY_REDEMPTION_POINTS_PER_UNIT must be positive")
        if self.earn_points_per_unit < 0:
            raise ValueError("LOYALTY_EARN_POINTS_PER_UNIT must be >= 0")

    @classmethod
    def from_config(cls, config) -> "LoyaltyPolicy":
        return cls(
            earn_points_per_unit=int(config.get("LOYALTY_EARN_POINTS_PER_UNIT", 1)),
            redemption_points_per_unit=int(config.get("LOYALTY_REDEMPTION_POINTS_PER_UNIT", 100)),
            earn_basis=str(config.get("LOYALTY_EARN_BASIS", "PRE_REDEMPTION")).upper(),
            reward_ttl_days=int(config.get("LOYALTY_REWARD_TTL_DAYS", 365)),
        )


@dataclass(frozen=True)
class LoyaltySettlement:
    points_earned: int = 0
    points_used: int = 0
    discount_from_points_cents: int = 0
    new_balance: int = 0

    def to_dict(self) -> dict:
        return {
            "points_earned": self.points_earned,
            "points_used": self.points_used,
            "discount_from_points_cents": self.discount_from_points_cents,
            "new_balance": self.new_balance,
        }


def points_discount_cents(points: int, policy: LoyaltyPolicy) -> int:
    # floor: partial units are not paid out
    return points * 100 // policy.redemption_points_per_unit


def settle(
    customer: Customer | None,
    sale_total_cents: int,
    points_requested: int,
    policy: LoyaltyPolicy,
) -> LoyaltySettlement:
    """
    Compute points earned/used for one sale.

    sale_total_cents is the total before any points discount. No customer
    yields an all-zero settlement.
    """
    if points_requested < 0:
        raise ValidationError("loyalty_points_used must be >= 0")
    if customer is None:
        return LoyaltySettlement()

    balance = customer.loyalty_points or 0
    if points_requested > balance:
        raise InsufficientLoyaltyPointsError(
            f"Insufficient loyalty points: balance {balance}, requested {points_requested}",
            balance=balance,
            requested=points_requested,
        )

    discount = points_discount_cents(points_requested, policy)

    earn_base = sale_total_cents
    if policy.earn_basis == "POST_REDEMPTION":
        earn_base = max(sale_total_cents - discount, 0)
    points_earned = earn_base * policy.earn_points_per_unit // 100

    return LoyaltySettlement(
        points_earned=points_earned,
        points_used=points_requested,
        discount_from_points_cents=discount,
        new_balance=balance - points_requested + points_earned,
    )


def earned_reward(
    customer_id: int,
    points_earned: int,
    policy: LoyaltyPolicy,
    now: datetime | None = None,
) -> LoyaltyReward:
    """
    Reward row recording points earned on a sale, expiring after the policy TTL.

    The sale row does not exist yet when points are settled; the sale
    transaction sets sale_id and the description once it has an invoice.
    """
    now = now or utcnow()
    return LoyaltyReward(
        customer_id=customer_id,
        points_used=0,
        reward_type="POINTS",
        reward_value=points_earned,
        description="Points earned from purchase",
        expires_at=now + timedelta(days=policy.reward_ttl_days),
        created_at=now,
    )


# =============================================================================
# Manual reward operations
# =============================================================================

def _get_customer(customer_id: int, *, lock: bool = False) -> Customer:
    query = db.session.query(Customer).filter(Customer.id == customer_id)
    if lock:
        query = lock_for_update(query)
    customer = query.first()
    if not customer:
        raise NotFoundError("Customer not found")
    return customer


def list_rewards(customer_id: int) -> tuple[Customer, list[LoyaltyReward]]:
    customer = _get_customer(customer_id)
    rewards = (
        db.session.query(LoyaltyReward)
        .filter(LoyaltyReward.customer_id == customer_id)
        .order_by(LoyaltyReward.created_at.desc(), LoyaltyReward.id.desc())
        .all()
    )
    return customer, rewards


def create_reward(
    *,
    customer_id: int,
    points_used: int,
    reward_type: str,
    reward_value: int,
    description: str | None = None,
    expires_at: datetime | None = None,
) -> LoyaltyReward:
    """Spend points on a manual reward. The points leave the balance immediately."""
    if points_used < 1:
        raise ValidationError("points_used must be >= 1")
    if reward_type not in REWARD_TYPES:
        raise ValidationError(f"reward_type must be one of {', '.join(REWARD_TYPES)}")
    if reward_value < 0:
        raise ValidationError("reward_value must be >= 0")

    def _op() -> LoyaltyReward:
        customer = _get_customer(customer_id, lock=True)
        if not customer.is_active:
            raise ValidationError("Customer is inactive")
        if points_used > customer.loyalty_points:
            raise InsufficientLoyaltyPointsError(
                f"Insufficient loyalty points: balance {customer.loyalty_points}, requested {points_used}",
                balance=customer.loyalty_points,
                requested=points_used,
            )
        customer.loyalty_points -= points_used
        reward = LoyaltyReward(
            customer_id=customer.id,
            points_used=points_used,
            reward_type=reward_type,
            reward_value=reward_value,
            description=description,
            expires_at=expires_at,
            created_at=utcnow(),
        )
        db.session.add(reward)
        db.session.flush()
        return reward

    return run_in_transaction(_op, description="create loyalty reward")


def redeem_reward(*, customer_id: int, reward_id: int) -> LoyaltyReward:
    def _op() -> LoyaltyReward:
        reward = lock_for_update(
            db.session.query(LoyaltyReward).filter(
                LoyaltyReward.id == reward_id,
                LoyaltyReward.customer_id == customer_id,
            )
        ).first()
        if not reward:
            raise NotFoundError("Reward not found")
        if reward.is_redeemed:
            raise ConflictError("Reward already redeemed")
        now = utcnow()
        if reward.expires_at is not None and reward.expires_at < now:
            raise ConflictError("Reward has expired")
        reward.is_redeemed = True
        reward.redeemed_at = now
        return reward

    return run_in_transaction(_op, description="redeem loyalty reward")
