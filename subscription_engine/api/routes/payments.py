"""Checkout confirmation."""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from subscription_engine.core.exceptions import SignatureInvalid
from subscription_engine.core.security import require_internal_token
from subscription_engine.services.payment_verification import PaymentVerifier

router = APIRouter(dependencies=[Depends(require_internal_token)])


class VerifyPaymentRequest(BaseModel):
    user_id: str = Field(min_length=1)
    razorpay_payment_id: str = Field(min_length=1)
    razorpay_subscription_id: str = Field(min_length=1)
    razorpay_signature: str = Field(min_length=1)


class VerifyPaymentResponse(BaseModel):
    verified: bool
    status: str
    message: str


def get_payment_verifier() -> PaymentVerifier:
    return PaymentVerifier()


@router.post("/verify", response_model=VerifyPaymentResponse)
async def verify_payment(body: VerifyPaymentRequest, verifier: PaymentVerifier = Depends(get_payment_verifier)):
    """Verify the checkout signature and record the payment as verified.

    Access is granted by the subscription.activated webhook, not by this call.
    """
    try:
        result = await verifier.verify(
            user_id=body.user_id,
            payment_id=body.razorpay_payment_id,
            subscription_id=body.razorpay_subscription_id,
            signature=body.razorpay_signature,
        )
    except SignatureInvalid:
        raise HTTPException(status_code=400, detail="Invalid payment signature")

    return VerifyPaymentResponse(verified=result.verified, status=result.status, message="Payment verified successfully")
