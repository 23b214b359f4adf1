from .registry import AgentRegistry, default_registry

__all__ = ["AgentRegistry", "default_registry"]
