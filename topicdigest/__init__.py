"""Topic Digest - per-subscriber digest actors with replicated settings"""

from __future__ import annotations

__version__ = "0.1.0"


# Lazy imports so lightweight modules don't pull in FastAPI or the LLM SDKs
def __getattr__(name: str):
    if name == "SubscriptionActor":
        from topicdigest.subscription.actor import SubscriptionActor

        return SubscriptionActor
    if name == "ActorRegistry":
        from topicdigest.subscription.registry import ActorRegistry

        return ActorRegistry
    if name == "ReplicatedDocument":
        from topicdigest.replication.document import ReplicatedDocument

        return ReplicatedDocument
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
