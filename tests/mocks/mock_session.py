"""
Scripted GattSession stand-in for scheduler and daemon tests.
"""

import asyncio
from typing import List, Optional, Union

from aranet_monitor.ble.protocol import DeviceInfo, Reading, decode_current_readings
from aranet_monitor.ble.session import DeviceAddress, SessionState
from tests.fixtures.sensor_data import SensorDataFixtures


class ScriptedSession:
    """
    Returns or raises the scripted outcomes in order, one per ``fetch_once``
    call; the last outcome repeats.
    """

    def __init__(self, outcomes: Optional[List[Union[Reading, Exception]]] = None,
                 fetch_delay: float = 0.0):
        self.device = DeviceAddress(SensorDataFixtures.DEVICE_ADDRESS)
        self.outcomes = list(outcomes) if outcomes else [
            decode_current_readings(SensorDataFixtures.indoor_payload())
        ]
        self.fetch_delay = fetch_delay
        self.state = SessionState.DISCONNECTED
        self.device_info: Optional[DeviceInfo] = DeviceInfo(name="Aranet4 12345")
        self.connection_count = 0

        self.fetch_calls = 0
        self.fetch_times: List[float] = []
        self.process_events_calls = 0
        self.entered = 0
        self.disconnects = 0

    async def __aenter__(self):
        self.entered += 1
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.disconnect()

    async def fetch_once(self) -> Reading:
        self.fetch_calls += 1
        self.fetch_times.append(asyncio.get_running_loop().time())
        if self.fetch_delay:
            await asyncio.sleep(self.fetch_delay)

        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            self.state = SessionState.DISCONNECTED
            raise outcome
        self.state = SessionState.POLLING
        return outcome

    def process_events(self):
        self.process_events_calls += 1
        return []

    async def disconnect(self):
        self.disconnects += 1
        self.state = SessionState.DISCONNECTED
