"""Reconciliation of the locally ticked position with server snapshots.

Two producers write the displayed position: a local ticker advancing by
wall-clock time and the provider's status reports. Small drift is ignored,
medium drift is nudged toward the server value and large drift snaps to it.
"""

from dataclasses import dataclass

SNAP_THRESHOLD_MS = 3000
NUDGE_THRESHOLD_MS = 1000
NUDGE_FACTOR = 0.3
SEEK_CONFIRM_TOLERANCE_MS = 1000


def clamp_position(position: float, duration: int) -> int:
    """Clamp to ``[0, duration]``; an unknown duration (0) only bounds below."""
    position = max(0, int(round(position)))
    if duration > 0:
        position = min(position, duration)
    return position


@dataclass(frozen=True)
class PositionReconciler:
    """Tunable reconciliation thresholds.

    Attributes:
        snap_threshold_ms: Drift above which the server value is adopted at once.
        nudge_threshold_ms: Drift at or below which the local value is kept.
        nudge_factor: Share of the gap closed per report for drift in between.
        seek_confirm_tolerance_ms: Distance from a seek target at which a report confirms it.
    """

    snap_threshold_ms: int = SNAP_THRESHOLD_MS
    nudge_threshold_ms: int = NUDGE_THRESHOLD_MS
    nudge_factor: float = NUDGE_FACTOR
    seek_confirm_tolerance_ms: int = SEEK_CONFIRM_TOLERANCE_MS

    def reconcile(self, local_ms: int, server_ms: int) -> int:
        """Return the position to display after a server report.

        >>> PositionReconciler().reconcile(13500, 10000)
        10000
        >>> PositionReconciler().reconcile(11200, 10000)
        10840
        >>> PositionReconciler().reconcile(10400, 10000)
        10400
        """
        desync = abs(local_ms - server_ms)
        if desync > self.snap_threshold_ms:
            return server_ms
        if desync > self.nudge_threshold_ms:
            return int(round(local_ms + (server_ms - local_ms) * self.nudge_factor))
        return local_ms

    def confirms_seek(self, target_ms: int, server_ms: int) -> bool:
        return abs(server_ms - target_ms) <= self.seek_confirm_tolerance_ms
