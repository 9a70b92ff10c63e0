from __future__ import annotations

import asyncio
import json
import logging
from collections import Counter
from typing import Any

import firebase_admin
from common.utils import log_event
from firebase_admin import credentials, exceptions, messaging

from notifier.config import DEFAULT_SEND_TIMEOUT_SECONDS, NotifierSettings
from notifier.models import DeliveryOutcome, NotificationPayload, TokenFailure, TokenResponse

LOGGER = logging.getLogger("jobboard.notifier.delivery")

APP_NAME = "jobboard-notifier"
UNKNOWN_ERROR_CODE = "unknown"
TIMEOUT_ERROR_CODE = "timeout"
FAILURE_SAMPLE_SIZE = 5
PERMANENT_ERROR_CODES = frozenset({"UNREGISTERED", "NOT_FOUND", "SENDER_ID_MISMATCH"})


def extract_error_code(exc: BaseException | None) -> str:
    code = getattr(exc, "code", None)
    if code:
        return str(code)
    return UNKNOWN_ERROR_CODE


def is_permanent_failure(exc: BaseException | None) -> bool:
    if isinstance(exc, (messaging.UnregisteredError, messaging.SenderIdMismatchError)):
        return True
    return extract_error_code(exc).upper() in PERMANENT_ERROR_CODES


class PushDeliveryClient:
    """Wraps Firebase Cloud Messaging multicast sends for one batch at a time.

    The Firebase app is created at most once per client. A client built
    without credentials stays uninitialized and every send becomes a logged
    skip rather than a failure, so notifications can be switched off by
    leaving the credentials unset.
    """

    def __init__(
        self,
        *,
        credentials_json: str | None = None,
        credentials_path: str | None = None,
        timeout_seconds: float = DEFAULT_SEND_TIMEOUT_SECONDS,
        app: Any | None = None,
        messaging_api: Any | None = None,
        app_name: str = APP_NAME,
    ) -> None:
        self.credentials_json = credentials_json
        self.credentials_path = credentials_path
        self.timeout_seconds = timeout_seconds
        self.app_name = app_name
        self._messaging = messaging_api or messaging
        self._app = app
        self._init_attempted = app is not None

    @classmethod
    def from_settings(cls, settings: NotifierSettings) -> PushDeliveryClient:
        return cls(
            credentials_json=settings.firebase_credentials_json,
            credentials_path=settings.firebase_credentials_path,
            timeout_seconds=settings.send_timeout_seconds,
        )

    @property
    def initialized(self) -> bool:
        return self._app is not None

    def initialize(self) -> bool:
        if self._init_attempted:
            return self.initialized
        self._init_attempted = True

        if not self.credentials_json and not self.credentials_path:
            log_event(
                LOGGER,
                "push_client_init_skipped",
                level=logging.WARNING,
                reason="no FIREBASE_SERVICE_ACCOUNT_JSON or FIREBASE_SERVICE_ACCOUNT_PATH provided",
            )
            return False

        try:
            if self.credentials_json:
                certificate = credentials.Certificate(json.loads(self.credentials_json))
            else:
                certificate = credentials.Certificate(self.credentials_path)
            try:
                self._app = firebase_admin.get_app(self.app_name)
            except ValueError:
                self._app = firebase_admin.initialize_app(certificate, name=self.app_name)
        except (ValueError, OSError) as exc:
            log_event(
                LOGGER,
                "push_client_init_failed",
                level=logging.ERROR,
                error=str(exc),
            )
            return False

        log_event(
            LOGGER,
            "push_client_initialized",
            source="inline_json" if self.credentials_json else "file",
            app=self.app_name,
        )
        return True

    def _send_multicast(self, tokens: list[str], payload: NotificationPayload) -> Any:
        message = self._messaging.MulticastMessage(
            tokens=tokens,
            notification=self._messaging.Notification(title=payload.title, body=payload.body),
            data=dict(payload.data),
        )
        return self._messaging.send_each_for_multicast(message, app=self._app)

    async def send(self, tokens: list[str], payload: NotificationPayload) -> DeliveryOutcome:
        if not tokens:
            return DeliveryOutcome()

        self.initialize()
        if not self.initialized:
            log_event(
                LOGGER,
                "push_send_skipped",
                level=logging.WARNING,
                reason="client not initialized",
                tokens=len(tokens),
            )
            return DeliveryOutcome(skipped_count=len(tokens))

        # On timeout the worker thread is abandoned, not interrupted.
        try:
            batch_response = await asyncio.wait_for(
                asyncio.to_thread(self._send_multicast, tokens, payload),
                timeout=self.timeout_seconds,
            )
        except TimeoutError:
            return self._batch_failure(tokens, TIMEOUT_ERROR_CODE, "provider call timed out")
        except exceptions.FirebaseError as exc:
            return self._batch_failure(tokens, extract_error_code(exc), str(exc))

        return self.classify(tokens, batch_response.responses)

    def _batch_failure(self, tokens: list[str], code: str, message: str) -> DeliveryOutcome:
        log_event(
            LOGGER,
            "batch_send_failed",
            level=logging.ERROR,
            tokens=len(tokens),
            code=code,
            error=message,
        )
        return DeliveryOutcome(
            failure_count=len(tokens),
            responses=[
                TokenResponse(token=token, success=False, error_code=code, error_message=message)
                for token in tokens
            ],
            error_codes={code: len(tokens)},
            failure_sample=[
                TokenFailure(index=index, code=code, message=message)
                for index in range(min(len(tokens), FAILURE_SAMPLE_SIZE))
            ],
        )

    @staticmethod
    def classify(tokens: list[str], responses: list[Any]) -> DeliveryOutcome:
        token_responses: list[TokenResponse] = []
        error_codes: Counter[str] = Counter()
        sample: list[TokenFailure] = []
        invalid_tokens: list[str] = []

        for index, (token, response) in enumerate(zip(tokens, responses, strict=False)):
            if response.success:
                token_responses.append(
                    TokenResponse(
                        token=token,
                        success=True,
                        message_id=getattr(response, "message_id", None),
                    )
                )
                continue

            exc = getattr(response, "exception", None)
            code = extract_error_code(exc)
            message = str(exc) if exc is not None else ""
            error_codes[code] += 1
            if len(sample) < FAILURE_SAMPLE_SIZE:
                sample.append(TokenFailure(index=index, code=code, message=message))
            if is_permanent_failure(exc):
                invalid_tokens.append(token)
            token_responses.append(
                TokenResponse(token=token, success=False, error_code=code, error_message=message)
            )

        success_count = sum(1 for response in token_responses if response.success)
        return DeliveryOutcome(
            success_count=success_count,
            failure_count=len(token_responses) - success_count,
            responses=token_responses,
            error_codes=dict(error_codes),
            failure_sample=sample,
            invalid_tokens=invalid_tokens,
        )
