"""Polls 3CX extension states and feeds them into operator availability."""
import threading
import time
from datetime import datetime
from typing import Dict, Any, List, Optional

import requests

from callqueue import settings
from callqueue.availability import OperatorAvailability
from callqueue.logging_conf import logger

AVAILABLE = "Available"
BUSY = "Busy"
RINGING = "Ringing"
ON_HOLD = "OnHold"
OFFLINE = "Offline"

EXTENSION_STATUSES = (AVAILABLE, BUSY, RINGING, ON_HOLD, OFFLINE)


def map_status(raw: Optional[str]) -> str:
    """Map a raw 3CX state string to one of EXTENSION_STATUSES."""
    value = (raw or "").lower()
    if "available" in value or "free" in value:
        return AVAILABLE
    if "busy" in value or "on call" in value:
        return BUSY
    if "ring" in value:
        return RINGING
    if "hold" in value:
        return ON_HOLD
    return OFFLINE


class TcxMonitor:
    """Polls the 3CX web API for operator extension states."""

    def __init__(
        self,
        availability: OperatorAvailability,
        base_url: Optional[str] = None,
        extensions: Optional[List[str]] = None,
        poll_interval: Optional[int] = None,
    ):
        self.availability = availability
        self.base_url = (base_url or settings.TCX_API_URL or "").rstrip("/")
        self.extensions = list(extensions or settings.TCX_EXTENSIONS)
        self.poll_interval = poll_interval or settings.TCX_POLL_INTERVAL
        self.session = requests.Session()
        self.statuses: Dict[str, Dict[str, Any]] = {}
        self.logged_in = False
        self.running = False
        self.thread = None

    def start(self):
        """Start the monitor in a background thread."""
        if self.running:
            logger.warning("TCX monitor is already running")
            return

        self.running = True
        self.thread = threading.Thread(target=self._run, name="tcx-monitor", daemon=True)
        self.thread.start()
        logger.info(f"TCX monitor started (interval: {self.poll_interval}s, extensions: {self.extensions})")

    def stop(self):
        if not self.running:
            return

        self.running = False
        if self.thread:
            self.thread.join(timeout=10)
        logger.info("TCX monitor stopped")

    def _run(self):
        while self.running:
            try:
                self.poll_once()
            except Exception as e:
                logger.error(f"TCX monitor error: {e}", exc_info=True)

            # Sleep for polling interval
            for _ in range(self.poll_interval):
                if not self.running:
                    break
                time.sleep(1)

    def login(self) -> bool:
        """Log in and keep the session cookie on the HTTP session."""
        try:
            response = self.session.post(
                f"{self.base_url}/api/login",
                json={"username": settings.TCX_API_EMAIL, "password": settings.TCX_API_PASSWORD},
                timeout=15,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"TCX login error: {e}")
            return False

        if not response.ok:
            logger.error(f"TCX login failed: {response.status_code} {response.reason}")
            return False

        self.logged_in = True
        logger.info("TCX monitor logged in")
        return True

    def poll_once(self) -> int:
        """Refresh every extension. Returns how many were updated."""
        if not self.logged_in and not self.login():
            return 0

        updated = 0
        for extension in self.extensions:
            status = self.fetch_extension_status(extension)
            if status is None:
                # Keep last known state; an unreachable PBX must not look like free operators
                continue
            self.update_extension_status(extension, status)
            updated += 1

        logger.debug(
            "TCX statuses: " + ", ".join(f"{s['extension']}:{s['status']}" for s in self.get_all_statuses())
        )
        return updated

    def fetch_extension_status(self, extension: str) -> Optional[str]:
        """Return the mapped state of one extension, or None if it could not be read."""
        try:
            response = self.session.get(
                f"{self.base_url}/webapi/tcx/ext.state.get",
                params={"num": extension},
                timeout=15,
            )
            if response.status_code in (401, 403):
                self.logged_in = False
                logger.warning("TCX session expired, will log in again")
                return None
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.warning(f"Error fetching status for extension {extension}: {e}")
            return None

        return map_status(data.get("status") or data.get("fwdName"))

    def update_extension_status(self, extension: str, status: str) -> None:
        """Record an extension state, from polling or a PBX webhook."""
        if status not in EXTENSION_STATUSES:
            status = map_status(status)

        previous = self.statuses.get(extension, {}).get("status")
        self.statuses[extension] = {
            "extension": extension,
            "status": status,
            "last_updated": datetime.now(),
        }

        unit_id = f"ext-{extension}"
        if status == AVAILABLE:
            self.availability.mark_available(unit_id)
        else:
            self.availability.mark_busy(unit_id)

        if previous != status:
            logger.info(f"Extension {extension} is now {status}")

    def get_all_statuses(self) -> List[Dict[str, Any]]:
        return list(self.statuses.values())
