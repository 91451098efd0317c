"""CallbackRegistry: named, pre-registered result handlers.

Handlers are registered at startup under a stable name. At enqueue time the
caller's handler and argument are turned into a `CallbackDescriptor` (name +
serialized argument) that is stored with the entry; at delivery time the
descriptor is resolved back to the registered function, so nothing is ever
imported or invoked dynamically from persisted strings.

Handler signature: ``handler(content: BinaryIO, argument) -> None`` (plain
function or coroutine function).
"""

from __future__ import annotations

import inspect
import io
import json
from typing import Any, Callable, Dict, Optional, Type, Union

from pydantic import BaseModel, ValidationError

from batchpoll.core.exceptions import (
    CallbackInvocationError,
    InvalidQueueRequestError,
    UnknownCallbackError,
)
from batchpoll.core.models.callback import CallbackDescriptor

ResultHandler = Callable[[io.BytesIO, Any], Any]


class _Registration:
    def __init__(self, name: str, handler: ResultHandler, argument_type: Optional[Type[BaseModel]]):
        self.name = name
        self.handler = handler
        self.argument_type = argument_type


class CallbackRegistry:
    def __init__(self) -> None:
        self._by_name: Dict[str, _Registration] = {}

    def register(
        self,
        name: str,
        handler: ResultHandler,
        argument_type: Optional[Type[BaseModel]] = None,
    ) -> ResultHandler:
        if not name:
            raise ValueError("Callback handlers need a non-empty name")
        if not callable(handler):
            raise TypeError(f"Callback handler '{name}' is not callable")
        existing = self._by_name.get(name)
        if existing and existing.handler is not handler:
            raise ValueError(f"Another handler is already registered as '{name}'")
        self._by_name[name] = _Registration(name, handler, argument_type)
        return handler

    def handler(self, name: str, argument_type: Optional[Type[BaseModel]] = None):
        """Decorator form of `register`."""
        def decorator(func: ResultHandler) -> ResultHandler:
            return self.register(name, func, argument_type)
        return decorator

    def is_registered(self, name: str) -> bool:
        return name in self._by_name

    def _resolve(self, handler: Union[str, ResultHandler, None]) -> _Registration:
        if handler is None:
            raise InvalidQueueRequestError("A callback handler is required")
        if isinstance(handler, str):
            registration = self._by_name.get(handler)
        else:
            registration = next(
                (r for r in self._by_name.values() if r.handler is handler), None
            )
        if registration is None:
            shown = handler if isinstance(handler, str) else getattr(handler, "__qualname__", repr(handler))
            raise InvalidQueueRequestError(
                f"Callback handler {shown!r} is not registered",
                diagnostic=f"registered={sorted(self._by_name)}",
            )
        return registration

    def describe(self, handler: Union[str, ResultHandler, None], argument: Any = None) -> CallbackDescriptor:
        """Build the persistable descriptor for a registered handler and its argument."""
        registration = self._resolve(handler)
        argument_type = registration.argument_type
        if argument_type is not None:
            if isinstance(argument, dict):
                try:
                    argument = argument_type.model_validate(argument)
                except ValidationError as exc:
                    raise InvalidQueueRequestError(
                        f"Callback argument does not match {argument_type.__name__}",
                        diagnostic=str(exc),
                    ) from exc
            if not isinstance(argument, argument_type):
                raise InvalidQueueRequestError(
                    f"Callback '{registration.name}' expects a {argument_type.__name__} argument, "
                    f"got {type(argument).__name__}"
                )
            return CallbackDescriptor(
                handler_name=registration.name,
                argument_json=argument.model_dump_json(),
                argument_type=argument_type.__name__,
            )
        if isinstance(argument, BaseModel):
            argument_json = argument.model_dump_json()
        else:
            try:
                argument_json = json.dumps(argument)
            except (TypeError, ValueError) as exc:
                raise InvalidQueueRequestError(
                    f"Callback argument for '{registration.name}' is not JSON serializable",
                    diagnostic=str(exc),
                ) from exc
        return CallbackDescriptor(handler_name=registration.name, argument_json=argument_json)

    def _load_argument(self, registration: _Registration, descriptor: CallbackDescriptor) -> Any:
        argument_type = registration.argument_type
        if argument_type is not None:
            if descriptor.argument_type and descriptor.argument_type != argument_type.__name__:
                raise CallbackInvocationError(
                    f"Stored argument type {descriptor.argument_type} no longer matches "
                    f"{argument_type.__name__} registered for '{registration.name}'"
                )
            return argument_type.model_validate_json(descriptor.argument_json)
        return json.loads(descriptor.argument_json)

    async def invoke(
        self,
        descriptor: CallbackDescriptor,
        content: bytes,
        entry_id: Optional[str] = None,
    ) -> None:
        """Call the handler named by `descriptor` exactly once with the content."""
        registration = self._by_name.get(descriptor.handler_name)
        if registration is None:
            raise UnknownCallbackError(descriptor.handler_name, entry_id=entry_id)
        try:
            argument = self._load_argument(registration, descriptor)
        except (ValidationError, ValueError) as exc:
            raise CallbackInvocationError(
                f"Could not decode argument for '{registration.name}'",
                diagnostic=str(exc),
                entry_id=entry_id,
            ) from exc

        stream = io.BytesIO(content)
        try:
            result = registration.handler(stream, argument)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            raise CallbackInvocationError(
                f"Callback '{registration.name}' raised {type(exc).__name__}",
                diagnostic=str(exc),
                entry_id=entry_id,
            ) from exc
        finally:
            stream.close()
