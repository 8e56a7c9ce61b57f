"""
SMS delivery channel

Sends the "return to the shop" text through the Twilio Messages REST API.
Configuration: credentials/sender/API URL resolved via config.py only.

LOCAL runs without Twilio credentials use ConsoleSmsClient, which only logs.
"""
import logging
import uuid
from typing import Optional

import httpx

import config
from app.services.queue_notifications.service import mask_phone_number
from app.utils.retry import retry_async

logger = logging.getLogger(__name__)

# Only failures where Twilio cannot have accepted the message are retried:
# a read timeout after the POST may already have produced an SMS.
SMS_RETRY_ON = (httpx.ConnectError, httpx.ConnectTimeout, httpx.HTTPStatusError)


class SmsError(Exception):
    """Base class for SMS delivery errors"""
    pass


class SmsAuthError(SmsError):
    """Authentication error (401, 403)"""
    pass


class SmsInvalidRequestError(SmsError):
    """Rejected request (other 4xx), e.g. invalid destination number"""
    pass


class TwilioSmsClient:
    """
    Thin async client for POST /Accounts/{sid}/Messages.json.

    Example:
        client = TwilioSmsClient(sid, token, "+15550001111")
        message_sid = await client.send_message("+15552223333", "Hi!")
    """

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        api_url: str = "https://api.twilio.com/2010-04-01",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def messages_url(self) -> str:
        return f"{self.api_url}/Accounts/{self.account_sid}/Messages.json"

    async def send_message(self, to: str, body: str) -> str:
        """
        Send a text message.

        Args:
            to: Destination phone number (E.164)
            body: Message text

        Returns:
            Twilio message SID

        Raises:
            SmsAuthError: on 401/403
            SmsInvalidRequestError: on other 4xx
            SmsError: when the provider stays unavailable after retries or
                returns an unusable response
        """
        form = {"To": to, "From": self.from_number, "Body": body}

        async def _make_request():
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.messages_url,
                    data=form,
                    auth=(self.account_sid, self.auth_token),
                )
                if response.status_code in (401, 403):
                    error_msg = f"Authentication error: status={response.status_code}"
                    logger.error(f"Twilio API error: {error_msg}")
                    raise SmsAuthError(error_msg)

                if 400 <= response.status_code < 500:
                    error_msg = (
                        f"Client error: status={response.status_code}, "
                        f"response={response.text[:200]}"
                    )
                    logger.error(f"Twilio API error: {error_msg} to={mask_phone_number(to)}")
                    raise SmsInvalidRequestError(error_msg)

                # 5xx raises HTTPStatusError, which is retried
                response.raise_for_status()
                return response

        try:
            response = await retry_async(
                _make_request,
                retries=2,
                base_delay=0.5,
                max_delay=3.0,
                retry_on=SMS_RETRY_ON,
            )
        except httpx.HTTPError as e:
            raise SmsError(f"Twilio API unavailable: {type(e).__name__}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise SmsError("Invalid response from Twilio API: not JSON") from e

        message_sid = data.get("sid")
        if not message_sid:
            raise SmsError("Invalid response from Twilio API: missing sid")

        logger.info(f"SMS sent to {mask_phone_number(to)}: {message_sid}")
        return message_sid


class ConsoleSmsClient:
    """Logs messages instead of sending them (LOCAL development)"""

    async def send_message(self, to: str, body: str) -> str:
        message_id = f"console-{uuid.uuid4()}"
        logger.info(f"CONSOLE_SMS to={mask_phone_number(to)} id={message_id}")
        logger.debug(f"CONSOLE_SMS id={message_id} body={body!r}")
        return message_id


def build_sms_client():
    """
    Build the SMS channel for the current environment.

    Returns:
        TwilioSmsClient when credentials are configured, ConsoleSmsClient in
        LOCAL otherwise

    Raises:
        RuntimeError: if Twilio is not configured outside LOCAL
    """
    if config.is_twilio_configured():
        return TwilioSmsClient(
            account_sid=config.TWILIO_ACCOUNT_SID,
            auth_token=config.TWILIO_AUTH_TOKEN,
            from_number=config.TWILIO_PHONE_NUMBER,
            api_url=config.TWILIO_API_URL,
            timeout=config.TWILIO_API_TIMEOUT,
        )
    if config.IS_LOCAL:
        logger.warning("Twilio is not configured - using console SMS sender (LOCAL)")
        return ConsoleSmsClient()
    raise RuntimeError(f"{config.APP_ENV.upper()}_TWILIO_* settings are not configured")
