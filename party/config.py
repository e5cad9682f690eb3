from dataclasses import dataclass

import constants


@dataclass
class PartyConfig:
    heartbeat_interval_ms: int = constants.HEARTBEAT_INTERVAL_MS
    liveness_timeout_ms: int = constants.LIVENESS_TIMEOUT_MS
    health_check_interval_ms: int = constants.HEALTH_CHECK_INTERVAL_MS
    sync_interval_ms: int = constants.SYNC_INTERVAL_MS
    periodic_sync: bool = constants.PERIODIC_SYNC
    debounce_ms: int = constants.DEBOUNCE_MS
    seek_settle_ms: int = constants.SEEK_SETTLE_MS
    seek_followup_ms: int = constants.SEEK_FOLLOWUP_MS
    redirect_delay_ms: int = constants.REDIRECT_DELAY_MS
    notification_ms: int = constants.NOTIFICATION_MS
    max_reconnect_attempts: int = constants.MAX_RECONNECT_ATTEMPTS
    max_init_attempts: int = constants.MAX_INIT_ATTEMPTS
    reconnect_base_ms: int = constants.RECONNECT_BASE_MS
    reconnect_max_ms: int = constants.RECONNECT_MAX_MS
    seek_tolerance_s: float = constants.SEEK_TOLERANCE_S
    sync_tolerance_s: float = constants.SYNC_TOLERANCE_S
    reconcile_drift_s: float = constants.RECONCILE_DRIFT_S
