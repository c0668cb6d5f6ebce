"""
In-memory OTP store for guest-to-member upgrades

Maps a user id to the pending one-time code plus the profile details the
user asked to upgrade to. Records expire after a fixed TTL and a background
timer sweeps expired ones.

**DEVELOPMENT:** process-local only. Codes are lost on restart and are not
shared between workers; swap for Redis/DB persistence before scaling out.
"""

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_OTP_TTL_SECONDS = 10 * 60
DEFAULT_SWEEP_INTERVAL_SECONDS = 60


@dataclass
class OTPRecord:
    """Pending upgrade for one user"""
    otp: str
    email: str
    full_name: str
    gender: str
    expires_at: float  # epoch seconds

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


def generate_otp() -> str:
    """6-digit numeric code (100000..999999)"""
    return str(random.SystemRandom().randint(100000, 999999))


class OTPStore:
    """Thread-safe TTL map from user id to OTPRecord"""

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_OTP_TTL_SECONDS,
        sweep_interval_seconds: int = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.clock = clock
        self._records: Dict[str, OTPRecord] = {}
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._running = False

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def set(self, user_id: str, record: OTPRecord) -> None:
        with self._lock:
            self._records[user_id] = record

    def get(self, user_id: str) -> Optional[OTPRecord]:
        """
        Return the stored record, expired or not.

        Callers check expiry themselves so they can tell the user the code
        expired rather than that it never existed.
        """
        with self._lock:
            return self._records.get(user_id)

    def delete(self, user_id: str) -> bool:
        with self._lock:
            return self._records.pop(user_id, None) is not None

    def is_expired(self, record: OTPRecord) -> bool:
        return record.is_expired(self.clock())

    def issue(self, user_id: str, email: str, full_name: str, gender: str) -> OTPRecord:
        """
        Generate and store a fresh code, replacing any pending one.

        Returns:
            The stored OTPRecord
        """
        record = OTPRecord(
            otp=generate_otp(),
            email=email,
            full_name=full_name,
            gender=gender,
            expires_at=self.clock() + self.ttl_seconds,
        )
        self.set(user_id, record)
        return record

    def sweep(self) -> int:
        """Remove expired records. Returns how many were removed."""
        now = self.clock()
        with self._lock:
            expired = [uid for uid, rec in self._records.items() if rec.is_expired(now)]
            for uid in expired:
                del self._records[uid]
        if expired:
            logger.debug(f"OTP sweep removed {len(expired)} expired codes")
        return len(expired)

    def start_sweeper(self) -> None:
        """Run sweep() every sweep_interval_seconds on a daemon timer."""
        with self._lock:
            if self._running:
                return
            self._running = True
        self._schedule()

    def stop_sweeper(self) -> None:
        with self._lock:
            self._running = False
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()

    def _schedule(self) -> None:
        timer = threading.Timer(self.sweep_interval_seconds, self._tick)
        timer.daemon = True
        with self._lock:
            if not self._running:
                return
            self._timer = timer
        timer.start()

    def _tick(self) -> None:
        try:
            self.sweep()
        except Exception:
            logger.exception("OTP sweep failed")
        self._schedule()


# Process-global store used by the API
otp_store = OTPStore()
