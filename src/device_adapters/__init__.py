"""Device adapters.

Each data source transport has its own adapter class that inherits from
DeviceAdapter. The bleak and garminconnect backed adapters are imported from
their own modules so the simulated adapter works without a radio or account.
"""

from src.device_adapters.base import DeviceAdapter
from src.device_adapters.simulated import SIMULATED_DEVICES, SimulatedAdapter

__all__ = [
    "DeviceAdapter",
    "SIMULATED_DEVICES",
    "SimulatedAdapter",
]
