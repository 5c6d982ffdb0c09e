"""Outbound calls to Stripe (Connect OAuth, PaymentIntents, Transfers)."""
import logging
from urllib.parse import urlencode

import stripe

from runpool.core.errors import ProcessorError

logger = logging.getLogger(__name__)

CONNECT_AUTHORIZE_URL = "https://connect.stripe.com/oauth/authorize"
CONNECT_SCOPE = "read_write"


class StripeGateway:
    def __init__(self, api_key: str, client_id: str | None = None, currency: str = "usd"):
        self.api_key = api_key
        self.client_id = client_id
        self.currency = currency

    def connect_url(self, redirect_uri: str, state: str) -> str:
        if not self.client_id:
            raise ProcessorError("Stripe Connect is not configured")
        params = {
            "client_id": self.client_id,
            "scope": CONNECT_SCOPE,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "state": state,
        }
        return f"{CONNECT_AUTHORIZE_URL}?{urlencode(params)}"

    def connect_account(self, code: str) -> tuple[str, str]:
        """Exchange an OAuth code; returns (account_id, 'complete'|'incomplete')."""
        try:
            resp = stripe.OAuth.token(grant_type="authorization_code", code=code, api_key=self.api_key)
            account_id = resp.stripe_user_id
            if not account_id:
                raise ProcessorError("No Stripe user id in OAuth response")
            account = stripe.Account.retrieve(account_id, api_key=self.api_key)
        except stripe.StripeError as e:
            logger.error("Stripe OAuth exchange failed: %s", e)
            raise ProcessorError("Failed to connect Stripe account") from e

        status = "complete" if getattr(account, "details_submitted", False) else "incomplete"
        return account_id, status

    def create_entry_intent(
        self,
        amount: int,
        destination: str,
        metadata: dict[str, str],
        payment_method_type: str = "card",
    ) -> tuple[str, str]:
        """Returns (client_secret, payment_intent_id)."""
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.api_key,
                amount=amount,
                currency=self.currency,
                payment_method_types=[payment_method_type],
                metadata=metadata,
                transfer_data={"destination": destination},
            )
        except stripe.StripeError as e:
            logger.error("PaymentIntent creation failed: %s", e)
            raise ProcessorError("Failed to create payment") from e

        if not intent.client_secret:
            raise ProcessorError("Failed to create payment")
        return intent.client_secret, intent.id

    def create_transfer(
        self,
        amount: int,
        destination: str,
        transfer_group: str,
        metadata: dict[str, str],
    ) -> str:
        try:
            transfer = stripe.Transfer.create(
                api_key=self.api_key,
                amount=amount,
                currency=self.currency,
                destination=destination,
                transfer_group=transfer_group,
                metadata=metadata,
            )
        except stripe.StripeError as e:
            logger.error("Transfer to %s failed: %s", destination, e)
            raise ProcessorError("Failed to process payout") from e
        return transfer.id
