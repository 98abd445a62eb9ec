"""Host and device implementations of every reconstruction stage."""

from .clusterization import DeviceClusterization, HostClusterization
from .finding import DeviceFinding, HostFinding
from .fitting import DeviceFitting, HostFitting
from .interfaces import Stage
from .params_estimation import DeviceParamsEstimation, HostParamsEstimation
from .partitioning import DevicePartitioning, HostPartitioning
from .seeding import DeviceSeeding, HostSeeding
from .spacepoint_formation import DeviceSpacepointFormation, HostSpacepointFormation

__all__ = [
    "Stage",
    "HostPartitioning",
    "DevicePartitioning",
    "HostClusterization",
    "DeviceClusterization",
    "HostSpacepointFormation",
    "DeviceSpacepointFormation",
    "HostSeeding",
    "DeviceSeeding",
    "HostParamsEstimation",
    "DeviceParamsEstimation",
    "HostFinding",
    "DeviceFinding",
    "HostFitting",
    "DeviceFitting",
]
