"""Exception hierarchy for mini-copilotgw."""
from __future__ import annotations


class CopilotGatewayError(RuntimeError):
    """Base class for all gateway errors."""


class DecodeError(CopilotGatewayError):
    """Malformed completion request body.

    Raised before any backend call; surfaces as a client error status."""


class OptionsError(CopilotGatewayError, ValueError):
    """Generation options outside their permitted range."""


class TemplateError(CopilotGatewayError):
    """Prompt template failed to compile or render."""


class BackendInitError(CopilotGatewayError):
    """The generation backend could not be created or reached."""


class BackendError(CopilotGatewayError):
    """The generation backend failed while serving a request."""


class StreamTimeout(CopilotGatewayError):
    """The completion deadline elapsed before the backend finished."""


class StreamCancelled(CopilotGatewayError):
    """The client went away while a completion was streaming."""


class CertificateGenerationError(CopilotGatewayError):
    """The self-signed certificate could not be produced."""


class ListenerBindError(CopilotGatewayError):
    """A listener could not bind its address."""


__all__ = [
    "BackendError",
    "BackendInitError",
    "CertificateGenerationError",
    "CopilotGatewayError",
    "DecodeError",
    "ListenerBindError",
    "OptionsError",
    "StreamCancelled",
    "StreamTimeout",
    "TemplateError",
]
