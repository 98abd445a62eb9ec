"""Barrel detector geometry and module lookup.

The detector is a set of concentric cylindrical layers, each split into
``modules_per_layer`` azimuthal staves spanning the full layer length. Host
code converts coordinates through ``Geometry``; device code uses the tensor
helpers at the bottom of this module with the geometry uploaded once per run.
"""

import logging
import math
from dataclasses import dataclass

import torch

from .edm import ROW_DTYPE, Module, records_to_tensor

logger = logging.getLogger(__name__)

# Transverse momentum (GeV) = PT_PER_TESLA_MM * B (T) * R (mm)
PT_PER_TESLA_MM = 0.0003

_RADIUS = Module.column("radius")
_PHI_CENTER = Module.column("phi_center")
_Z_CENTER = Module.column("z_center")
_LAYER = Module.column("layer")


def wrap_angle(angle: float) -> float:
    """Wrap an angle into ``[-pi, pi)``."""
    return (angle + math.pi) % (2.0 * math.pi) - math.pi


@dataclass
class Geometry:
    """Module lookup for one detector.

    Attributes:
        modules: Modules indexed by their ``surface_id``.
        half_length: Half length of every layer along z (mm).
    """

    modules: list[Module]
    half_length: float = 500.0

    def __len__(self) -> int:
        return len(self.modules)

    def __getitem__(self, module_link: int) -> Module:
        return self.modules[module_link]

    @property
    def layer_radii(self) -> list[float]:
        radii = {m.layer: m.radius for m in self.modules}
        return [radii[layer] for layer in sorted(radii)]

    @property
    def layer_ids(self) -> list[int]:
        """Distinct layer ids, innermost first."""
        return sorted({m.layer for m in self.modules})

    @property
    def n_layers(self) -> int:
        return len(self.layer_ids)

    def local_to_global(
        self, module_link: int, loc0: float, loc1: float
    ) -> tuple[float, float, float]:
        module = self.modules[module_link]
        phi = module.phi_center + loc0 / module.radius
        return (
            module.radius * math.cos(phi),
            module.radius * math.sin(phi),
            module.z_center + loc1,
        )

    def global_to_local(
        self, module_link: int, x: float, y: float, z: float
    ) -> tuple[float, float]:
        module = self.modules[module_link]
        dphi = wrap_angle(math.atan2(y, x) - module.phi_center)
        return module.radius * dphi, z - module.z_center

    def find_module(self, layer: int, phi: float) -> int:
        """Return the surface id of the stave on ``layer`` covering ``phi``."""
        staves = [m for m in self.modules if m.layer == layer]
        if not staves:
            raise KeyError(f"no modules on layer {layer}")
        width = 2.0 * math.pi / len(staves)
        sector = int((wrap_angle(phi) + math.pi) // width) % len(staves)
        return staves[sector].surface_id

    def to_tensor(self, device=None) -> torch.Tensor:
        return records_to_tensor(self.modules, Module, device=device)


def build_barrel_geometry(
    layer_radii: list[float],
    half_length: float,
    modules_per_layer: int,
    pitch_x: float,
    pitch_y: float,
) -> Geometry:
    """Build a barrel geometry with evenly spaced staves.

    Args:
        layer_radii: Layer radii in mm, in increasing order.
        half_length: Half length of every layer along z (mm).
        modules_per_layer: Number of azimuthal staves per layer.
        pitch_x: Pixel pitch along ``loc0`` (mm).
        pitch_y: Pixel pitch along ``loc1`` (mm).

    Returns:
        Geometry with ``len(layer_radii) * modules_per_layer`` modules.
    """
    modules = []
    width = 2.0 * math.pi / modules_per_layer
    for layer, radius in enumerate(layer_radii):
        for sector in range(modules_per_layer):
            modules.append(
                Module(
                    surface_id=len(modules),
                    layer=layer,
                    radius=float(radius),
                    phi_center=-math.pi + (sector + 0.5) * width,
                    z_center=0.0,
                    min_corner_x=-0.5 * width * radius,
                    min_corner_y=-half_length,
                    pitch_x=pitch_x,
                    pitch_y=pitch_y,
                )
            )
    logger.debug(
        "Built barrel geometry: %d layers, %d modules", len(layer_radii), len(modules)
    )
    return Geometry(modules=modules, half_length=half_length)


def local_to_global_tensor(
    modules: torch.Tensor,
    module_links: torch.Tensor,
    loc0: torch.Tensor,
    loc1: torch.Tensor,
) -> torch.Tensor:
    """Device-side ``Geometry.local_to_global`` for many points.

    Args:
        modules: Geometry tensor from ``Geometry.to_tensor``.
        module_links: Integer module indices, shape (N,).
        loc0: Local coordinate 0, shape (N,).
        loc1: Local coordinate 1, shape (N,).

    Returns:
        Global positions, shape (N, 3), float64.
    """
    rows = modules.index_select(0, module_links.long())
    radius = rows[:, _RADIUS]
    phi = rows[:, _PHI_CENTER] + loc0 / radius
    return torch.stack(
        [radius * torch.cos(phi), radius * torch.sin(phi), rows[:, _Z_CENTER] + loc1],
        dim=1,
    ).to(ROW_DTYPE)


def module_layers_tensor(modules: torch.Tensor, module_links: torch.Tensor) -> torch.Tensor:
    """Layer index of each module link, as int64."""
    return modules.index_select(0, module_links.long())[:, _LAYER].long()
