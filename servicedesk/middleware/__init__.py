from .rbac import ActorMiddleware

__all__ = ["ActorMiddleware"]
