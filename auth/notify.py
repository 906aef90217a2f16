"""
auth/notify.py -- Outbound message collaborators: SMS gateway and mailer.

The orchestrator only sees the interfaces (SMSGateway.send -> bool,
Mailer.send_password_reset). A False from send() becomes ServiceUnavailable
in AuthService; nothing here raises on delivery failure.

HttpSMSGateway posts {apiKey, to, message} as JSON to SMS_GATEWAY_URL. When no
gateway is configured, LogSMSGateway writes the message to the log instead so
local development works without an SMS account. Never configure the log
gateway in production -- it logs live codes.

Password-reset email delivery is not wired to a provider yet; LogMailer logs
that a reset was issued (and the token itself only in debug mode).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import requests

logger = logging.getLogger("fieldtrack.auth.notify")


class SMSGateway(ABC):
    @abstractmethod
    def send(self, phone: str, message: str) -> bool:
        """Deliver message to phone. True on accepted delivery."""


class HttpSMSGateway(SMSGateway):
    def __init__(self, url: str, api_key: str, timeout: float = 10.0) -> None:
        self.url = url
        self._api_key = api_key
        self.timeout = timeout
        # Shared session for connection pooling. Gateways are known endpoints;
        # 3 redirects is generous and limits SSRF via redirect chains.
        self._session = requests.Session()
        self._session.max_redirects = 3

    def send(self, phone: str, message: str) -> bool:
        try:
            resp = self._session.post(
                self.url,
                json={"apiKey": self._api_key, "to": phone, "message": message},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            return True
        except requests.RequestException as e:
            logger.warning("SMS delivery to %s failed: %s", phone, e)
            return False


class LogSMSGateway(SMSGateway):
    def send(self, phone: str, message: str) -> bool:
        logger.warning("SMS gateway not configured. Message for %s: %s", phone, message)
        return True


class Mailer(ABC):
    @abstractmethod
    def send_password_reset(self, email: str, token: str) -> bool: ...


class LogMailer(Mailer):
    def __init__(self, debug: bool = False) -> None:
        self.debug = debug

    def send_password_reset(self, email: str, token: str) -> bool:
        if self.debug:
            logger.info("Password reset token for %s: %s", email, token)
        else:
            logger.info("Password reset issued for %s", email)
        return True


def build_sms_gateway(url: str, api_key: str, timeout: float) -> SMSGateway:
    if url and api_key:
        return HttpSMSGateway(url, api_key, timeout)
    logger.warning("SMS_GATEWAY_URL/SMS_API_KEY not set -- OTP codes will be written to the log")
    return LogSMSGateway()
