"""
Rate Limiting and Pacing for Bar Source Requests

Upstream providers throttle history requests. IB Gateway's rules, which
the defaults mirror:
1. 15-second minimum between identical requests
2. Max 6 requests per 2 seconds per contract
3. Max 60 requests per 10-minute rolling window

The free delayed source gets the same treatment with looser limits.
"""

import asyncio
import logging
import time
from collections import deque, defaultdict
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Dict, Tuple

logger = logging.getLogger(__name__)


@dataclass
class PacingRequest:
    """A history request, as far as pacing is concerned"""
    provider: str
    symbol: str
    timeframe: str
    period: str

    def get_request_hash(self) -> str:
        """Identical-request key"""
        return f"{self.provider}:{self.symbol}:{self.timeframe}:{self.period}"

    def get_contract_key(self) -> str:
        """Per-contract burst key"""
        return f"{self.provider}:{self.symbol}"


class PacingManager:
    """
    Spaces requests to one provider.

    Enforces:
    - Rule 1: minimum delay between identical requests
    - Rule 2: max requests per short window per contract
    - Rule 3: max requests per global rolling window

    Slots are reserved before sleeping, so concurrent callers on one event
    loop never both claim the same opening.
    """

    def __init__(
        self,
        identical_request_delay: float = 15,
        contract_window_seconds: float = 2,
        contract_max_requests: int = 6,
        global_window_seconds: float = 600,
        global_max_requests: int = 60,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            identical_request_delay: Seconds between identical requests (default: 15)
            contract_window_seconds: Window for per-contract limit (default: 2)
            contract_max_requests: Max requests per contract window (default: 6)
            global_window_seconds: Global rolling window (default: 600 = 10 min)
            global_max_requests: Max requests in global window (default: 60)
        """
        self.identical_request_delay = identical_request_delay
        self.contract_window_seconds = contract_window_seconds
        self.contract_max_requests = contract_max_requests
        self.global_window_seconds = global_window_seconds
        self.global_max_requests = global_max_requests
        self._clock = clock
        self._sleep = sleep

        self.last_request_times: Dict[str, float] = {}
        self.contract_requests: Dict[str, Deque[float]] = defaultdict(deque)
        self.all_requests: Deque[float] = deque()

        # Statistics
        self.total_requests = 0
        self.total_delays = 0
        self.total_delay_time = 0.0

    async def wait_if_needed(self, request: PacingRequest) -> float:
        """
        Wait if necessary to comply with pacing rules.

        Returns:
            Time waited in seconds (0 if no wait needed)
        """
        now = self._clock()
        wait_time = self._calculate_required_wait(request, now)
        self._record_request(request, now + wait_time)
        self.total_requests += 1

        if wait_time > 0:
            self.total_delays += 1
            self.total_delay_time += wait_time
            logger.debug(f"[{request.symbol} {request.timeframe}] Pacing: waiting {wait_time:.1f}s")
            await self._sleep(wait_time)

        return wait_time

    def _calculate_required_wait(self, request: PacingRequest, now: float) -> float:
        wait_times = []

        # Rule 1: identical request timing
        request_hash = request.get_request_hash()
        if request_hash in self.last_request_times:
            elapsed = now - self.last_request_times[request_hash]
            if elapsed < self.identical_request_delay:
                wait_times.append(self.identical_request_delay - elapsed)

        # Rule 2: per-contract burst
        window_start = now - self.contract_window_seconds
        recent = [t for t in self.contract_requests[request.get_contract_key()] if t > window_start]
        if len(recent) >= self.contract_max_requests:
            # oldest of the last `max` requests must leave the window
            anchor = sorted(recent)[-self.contract_max_requests]
            wait_times.append(anchor + self.contract_window_seconds - now)

        # Rule 3: global window
        global_window_start = now - self.global_window_seconds
        recent_global = [t for t in self.all_requests if t > global_window_start]
        if len(recent_global) >= self.global_max_requests:
            anchor = sorted(recent_global)[-self.global_max_requests]
            wait_times.append(anchor + self.global_window_seconds - now)

        return max(max(wait_times), 0.0) if wait_times else 0.0

    def _record_request(self, request: PacingRequest, timestamp: float):
        self.last_request_times[request.get_request_hash()] = timestamp

        contract_key = request.get_contract_key()
        contract_times = self.contract_requests[contract_key]
        contract_times.append(timestamp)
        window_start = timestamp - self.contract_window_seconds - 1
        while contract_times and contract_times[0] < window_start:
            contract_times.popleft()

        self.all_requests.append(timestamp)
        global_window_start = timestamp - self.global_window_seconds - 1
        while self.all_requests and self.all_requests[0] < global_window_start:
            self.all_requests.popleft()

    def can_send_now(self, request: PacingRequest) -> Tuple[bool, float]:
        """(can_send, wait_time_if_not) without reserving a slot"""
        wait_time = self._calculate_required_wait(request, self._clock())
        return (wait_time == 0, wait_time)

    def get_statistics(self) -> Dict:
        return {
            'total_requests': self.total_requests,
            'total_delays': self.total_delays,
            'total_delay_time_seconds': self.total_delay_time,
            'average_delay_seconds': (
                self.total_delay_time / self.total_delays
                if self.total_delays > 0 else 0
            ),
            'current_global_requests': len(self.all_requests),
            'global_capacity_remaining': (
                self.global_max_requests - len(self.all_requests)
            )
        }

    def reset_statistics(self):
        self.total_requests = 0
        self.total_delays = 0
        self.total_delay_time = 0.0
