"""Request-scoped collaborators shared by the routers."""
from __future__ import annotations

from fastapi import Depends

from .broadcast import Broadcaster, get_broadcaster
from .transport import Transport, get_transport
from .use_cases.envelopes import DeliveryHooks, DispatchPolicy


def get_delivery_hooks(
    transport: Transport = Depends(get_transport),
    broadcaster: Broadcaster = Depends(get_broadcaster),
) -> DeliveryHooks:
    return DeliveryHooks(
        transport=transport,
        broadcast=broadcaster,
        policy=DispatchPolicy.from_settings(),
    )
