"""Google Play Real-time Developer Notification consumer.

Pulls RTDN messages from a Pub/Sub subscription and feeds them through the
entitlement state machine. Messages are acked once their effect is durable
(or they can never be applied) and nacked on transient failure so Pub/Sub
redelivers them.
"""

from threading import RLock
from typing import Optional

from google.cloud import pubsub_v1

from iap_entitlements.config import ConfigurationError
from iap_entitlements.logging_config import bind_context, clear_context, get_logger
from iap_entitlements.models.notifications import NotificationOutcome
from iap_entitlements.models.subscription import StoreProvider
from iap_entitlements.providers.base import (
    InvalidNotificationError,
    InvalidPurchaseError,
    ProviderUnavailableError,
)
from iap_entitlements.services.entitlement_state_machine import EntitlementStateMachine
from iap_entitlements.services.idempotency_guard import IdempotencyStorageError

logger = get_logger(__name__)


class RtdnListener:
    """Streaming-pull subscriber for RTDN messages.

    Args:
        engine: Entitlement state machine that applies notifications
        project_id: GCP project ID
        subscription: Pub/Sub subscription name (without project path)
        max_messages: Flow control limit on outstanding messages
        subscriber: Pub/Sub subscriber client (created on start if omitted)
    """

    def __init__(
        self,
        engine: EntitlementStateMachine,
        project_id: str,
        subscription: str,
        max_messages: int = 10,
        subscriber: Optional[pubsub_v1.SubscriberClient] = None,
    ):
        self._engine = engine
        self._project_id = project_id
        self._subscription = subscription
        self._max_messages = max_messages
        self._subscriber = subscriber
        self._future = None
        self._lock = RLock()

    @property
    def is_running(self) -> bool:
        return self._future is not None

    def start(self) -> None:
        """Open the streaming pull. Calling start twice is a no-op."""
        with self._lock:
            if self._future is not None:
                return
            if self._subscriber is None:
                self._subscriber = pubsub_v1.SubscriberClient()

            subscription_path = self._subscriber.subscription_path(self._project_id, self._subscription)
            self._future = self._subscriber.subscribe(
                subscription_path,
                callback=self.handle_message,
                flow_control=pubsub_v1.types.FlowControl(max_messages=self._max_messages),
            )
            logger.info(
                "rtdn_listener_started",
                subscription_path=subscription_path,
                max_messages=self._max_messages,
            )

    def stop(self) -> None:
        """Cancel the streaming pull and close the subscriber."""
        with self._lock:
            if self._future is None:
                return
            self._future.cancel()
            try:
                self._future.result(timeout=10)
            except Exception as e:
                # A cancelled streaming pull resolves with an exception
                logger.debug("rtdn_listener_future_closed", error_type=type(e).__name__)
            self._future = None
            if self._subscriber is not None:
                self._subscriber.close()
            logger.info("rtdn_listener_stopped", subscription=self._subscription)

    def handle_message(self, message) -> None:
        """Pub/Sub callback for one pulled message."""
        bind_context(message_id=message.message_id, provider=StoreProvider.GOOGLE.value)
        try:
            verifier = self._engine.verifiers.get(StoreProvider.GOOGLE)
            notification = verifier.decode_notification(message.data)
            if notification is None:
                message.ack()
                return

            outcome = self._engine.handle_provider_notification(notification)
            logger.info(
                "rtdn_message_processed",
                outcome=outcome.value,
                notification_id=notification.notification_id,
            )
            message.ack()
        except InvalidNotificationError as e:
            # Redelivery cannot fix a malformed message
            logger.error("rtdn_message_malformed", error=str(e))
            message.ack()
        except InvalidPurchaseError as e:
            logger.warning("rtdn_purchase_rejected", error=str(e), outcome=NotificationOutcome.IGNORED.value)
            message.ack()
        except (ProviderUnavailableError, IdempotencyStorageError) as e:
            logger.warning("rtdn_message_retry", error=str(e), error_type=type(e).__name__)
            message.nack()
        except ConfigurationError as e:
            logger.error("rtdn_message_configuration_error", error=str(e))
            message.nack()
        except Exception as e:
            logger.error(
                "rtdn_message_failed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            message.nack()
        finally:
            clear_context()
