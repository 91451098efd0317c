from typing import Optional

from pydantic import BaseModel


class CallbackDescriptor(BaseModel):
    """Persistable reference to a registered result handler.

    Only the registered name is stored, never the callable itself, so the
    descriptor survives a process restart as long as the handler is
    registered again under the same name at startup.
    """

    handler_name: str
    argument_json: str = "null"
    argument_type: Optional[str] = None  # name of the pydantic argument model, if any

    model_config = {"frozen": True}
