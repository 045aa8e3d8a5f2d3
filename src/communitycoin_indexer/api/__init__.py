"""HTTP surface: webhook ingress and batch trigger."""

from communitycoin_indexer.api.app import AppContext, create_app
from communitycoin_indexer.api.webhook import WebhookHandler, verify_signature

__all__ = ["AppContext", "WebhookHandler", "create_app", "verify_signature"]
