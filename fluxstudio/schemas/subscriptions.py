from pydantic import BaseModel, Field


class CreateSubscriptionRequest(BaseModel):
    """Request to start a subscription checkout"""

    priceId: str | None = Field(None, description="Stripe price ID of the tier to buy")


class UpgradeSubscriptionRequest(BaseModel):
    priceId: str | None = Field(None, description="Stripe price ID of the new tier")


class CheckoutSessionResponse(BaseModel):
    sessionId: str
    url: str | None = None


class CheckoutSessionStatusResponse(BaseModel):
    status: str | None = None
    subscriptionId: str | None = None


class SubscriptionInfoResponse(BaseModel):
    subscriptionTier: str
    credits: int
    maxCredits: int
    creditsResetDate: int | None = None
    hasActiveSubscription: bool = False
    cancelAtPeriodEnd: bool = False
    currentPeriodEnd: int | None = None


class SubscriptionMessageResponse(BaseModel):
    message: str
    tier: str | None = None


class BillingPeriodResetResponse(BaseModel):
    message: str
    credits: int
    maxCredits: int
    currentPeriodStart: int | None = None
    currentPeriodEnd: int | None = None
