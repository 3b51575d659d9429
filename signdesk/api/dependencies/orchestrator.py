from functools import lru_cache

from signdesk.core.config import get_settings
from signdesk.services.orchestrator_factory import build_orchestrator, build_webhook_ingestor
from signdesk.services.signing_orchestrator import SigningOrchestrator
from signdesk.services.webhook_ingestor import WebhookIngestor


@lru_cache(maxsize=None)
def get_orchestrator() -> SigningOrchestrator:
    return build_orchestrator(get_settings())


def get_webhook_ingestor() -> WebhookIngestor:
    return build_webhook_ingestor(get_settings(), get_orchestrator())
