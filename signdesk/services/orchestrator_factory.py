"""Build the orchestrator and its collaborators from settings."""

from redis.asyncio import Redis

from signdesk.core.config import Settings
from signdesk.integrations.esignature import SigningProvider, SigningProviderFactory
from signdesk.integrations.notifications import (
    LoggingNotificationSender,
    NotificationSender,
    PostmarkNotificationSender,
)
from signdesk.integrations.storage import LocalDocumentStore
from signdesk.services.reminder_policy import AllowAllReminders, RedisReminderThrottle, ReminderPolicy
from signdesk.services.signing_orchestrator import SigningOrchestrator
from signdesk.services.webhook_ingestor import WebhookIngestor


def build_signing_provider(settings: Settings) -> SigningProvider:
    return SigningProviderFactory.create_provider(
        settings.signing_provider,
        base_url=settings.signing_provider_base_url,
        api_key=settings.signing_provider_api_key,
        timeout_seconds=settings.signing_provider_timeout_seconds,
        max_retries=settings.signing_provider_max_retries,
        retry_delay_seconds=settings.signing_provider_retry_delay_seconds,
    )


def build_notifier(settings: Settings) -> NotificationSender:
    if settings.notification_channel == "postmark":
        return PostmarkNotificationSender(settings.postmark_server_token, settings.postmark_from_email)
    return LoggingNotificationSender()


def build_reminder_policy(settings: Settings) -> ReminderPolicy:
    if settings.reminder_cooldown_minutes <= 0:
        return AllowAllReminders()
    return RedisReminderThrottle(Redis.from_url(settings.redis_url), settings.reminder_cooldown_minutes * 60)


def build_orchestrator(settings: Settings) -> SigningOrchestrator:
    return SigningOrchestrator(
        build_signing_provider(settings),
        LocalDocumentStore(settings.document_storage_path),
        build_notifier(settings),
        reminder_policy=build_reminder_policy(settings),
        max_signatories=settings.max_signatories,
        transition_max_attempts=settings.transition_max_attempts,
    )


def build_webhook_ingestor(settings: Settings, orchestrator: SigningOrchestrator) -> WebhookIngestor:
    return WebhookIngestor(orchestrator, settings.signing_webhook_secret)
