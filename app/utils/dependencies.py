from typing import Any, Callable, Dict, Type, TypeVar, cast

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from app.db.session import get_db

# Type variable for service classes
T = TypeVar("T")

# Global registry of service factories
_service_registry: Dict[Type[Any], Callable[[Session], Any]] = {}

# One dependency callable per service class, stable for dependency_overrides
_dependency_cache: Dict[Type[Any], Callable[..., Any]] = {}


def register_service(service_class: Type[T], factory: Callable[[Session], T]) -> None:
    """
    Register a service factory function.

    Args:
        service_class: The class of the service
        factory: Function that creates an instance of the service from a session
    """
    _service_registry[service_class] = factory


def get_service(service_class: Type[T]) -> Callable[..., T]:
    """
    Get a dependency provider for a service.

    Services that were never registered fall back to ``service_class(db)``.
    The instance is cached on the request state, so every dependency in one
    request shares it. Tests override the returned callable through
    ``app.dependency_overrides``, so it is cached per class as well.
    """
    if service_class in _dependency_cache:
        return _dependency_cache[service_class]

    async def _get_service(request: Request, db: Session = Depends(get_db)) -> T:
        service_key = f"service:{service_class.__name__}"
        if hasattr(request.state, service_key):
            return cast(T, getattr(request.state, service_key))

        factory = _service_registry.get(service_class, service_class)
        service = factory(db)

        setattr(request.state, service_key, service)
        return service

    _dependency_cache[service_class] = _get_service
    return _get_service
