"""
Compositing engines for the hybrid pipeline, highest fidelity first.

``remote`` wraps the hosted garment-swap service, ``fallback`` renders a
local layered-blend preview, and ``placeholder`` draws the static
"preview unavailable" card that always succeeds.
"""

from .fallback import FallbackCompositor, FixedRatioTorsoEstimator, TorsoEstimator
from .placeholder import PlaceholderGenerator
from .remote import HttpRemoteCompositor, RemoteCompositeResult, RemoteCompositor

__all__ = [
    "FallbackCompositor",
    "FixedRatioTorsoEstimator",
    "HttpRemoteCompositor",
    "PlaceholderGenerator",
    "RemoteCompositeResult",
    "RemoteCompositor",
    "TorsoEstimator",
]
