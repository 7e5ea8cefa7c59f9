"""Choice of the output device when a load does not name one."""

from collections.abc import Sequence

from spotify_remote_playback.models import Device


def resolve_device(devices: Sequence[Device], last_device_id: str | None = None) -> Device | None:
    """Pick the device to play on.

    Preference order:
    1. The device used in the previous session, if still listed.
    2. An active smartphone.
    3. Any smartphone, even if inactive.
    4. Any active device.
    5. The first listed device.

    Args:
        devices: Devices currently reported by the provider.
        last_device_id: Device persisted from the previous session.

    Returns:
        The chosen device, or None when the list is empty.
    """
    if not devices:
        return None

    if last_device_id:
        for device in devices:
            if device.id == last_device_id:
                return device

    smartphones = [device for device in devices if device.is_smartphone]
    for device in smartphones:
        if device.is_active:
            return device
    if smartphones:
        return smartphones[0]

    for device in devices:
        if device.is_active:
            return device

    return devices[0]
