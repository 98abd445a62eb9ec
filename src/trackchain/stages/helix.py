"""Transverse track model shared by seeding, estimation, finding and fitting.

A track is described at a reference point ``b`` by its direction ``phi`` and
signed curvature ``k`` (positive for counter-clockwise motion, ``k = 0`` for a
straight line). All formulas stay finite as ``k -> 0``, so straight and
curved tracks need no separate code paths. Positive charges turn clockwise in
a field along +z, hence ``q = -sign(k)``.

Host functions work on floats, the ``*_t`` variants on broadcastable float64
tensors. Both evaluate the same expressions in the same order.
"""

import math

import torch

from ..geometry import PT_PER_TESLA_MM

# Below this curvature (1/mm) the arc length uses the straight-line limit.
MIN_CURVATURE = 1e-12


def triplet_curvature(bx, by, mx, my, tx, ty) -> float:
    """Signed curvature of the circle through three transverse points."""
    a = math.hypot(mx - bx, my - by)
    b = math.hypot(tx - mx, ty - my)
    c = math.hypot(tx - bx, ty - by)
    norm = a * b * c
    if norm == 0.0:
        return 0.0
    cross = (mx - bx) * (ty - my) - (my - by) * (tx - mx)
    return 2.0 * cross / norm


def tangent_phi(bx, by, mx, my, k) -> float:
    """Direction at ``b`` of the circle of curvature ``k`` passing through ``m``."""
    a = math.hypot(mx - bx, my - by)
    half = max(-1.0, min(1.0, 0.5 * a * k))
    return math.atan2(my - by, mx - bx) - math.asin(half)


def impact_parameter(bx, by, phi, k) -> float:
    """Distance of closest approach of the track circle to the origin."""
    nx, ny = -math.sin(phi), math.cos(phi)
    sign = 1.0 if k >= 0 else -1.0
    rho = abs(k)
    b2 = bx * bx + by * by
    num = b2 * rho + 2.0 * sign * (bx * nx + by * ny)
    den = math.hypot(rho * bx + sign * nx, rho * by + sign * ny) + 1.0
    return abs(num / den)


def curvature_to_qop(k: float, theta: float, bfield_z: float) -> float:
    return -k * math.sin(theta) / (PT_PER_TESLA_MM * bfield_z)


def qop_to_curvature(qop: float, theta: float, bfield_z: float) -> float:
    sin_theta = math.sin(theta)
    if sin_theta == 0.0:
        return 0.0
    return -qop * PT_PER_TESLA_MM * bfield_z / sin_theta


def arc_and_distance(bx, by, phi, k, px, py) -> tuple[float, float]:
    """Arc length from ``b`` to the point of the circle closest to ``p``.

    Returns:
        ``(s, d)``: signed arc length along the direction of motion and the
        signed transverse distance of ``p`` from the circle (positive on the
        left of the motion).
    """
    dx, dy = px - bx, py - by
    cos_phi, sin_phi = math.cos(phi), math.sin(phi)
    along = dx * cos_phi + dy * sin_phi
    perp = -dx * sin_phi + dy * cos_phi
    d2 = dx * dx + dy * dy
    d = (2.0 * perp - k * d2) / (
        1.0 + math.hypot(k * dx + sin_phi, k * dy - cos_phi)
    )
    if abs(k) > MIN_CURVATURE:
        s = math.atan2(k * along, 1.0 - k * perp) / k
    else:
        s = along
    return s, d


def triplet_curvature_t(bx, by, mx, my, tx, ty) -> torch.Tensor:
    a = torch.hypot(mx - bx, my - by)
    b = torch.hypot(tx - mx, ty - my)
    c = torch.hypot(tx - bx, ty - by)
    norm = a * b * c
    cross = (mx - bx) * (ty - my) - (my - by) * (tx - mx)
    safe = torch.where(norm == 0.0, torch.ones_like(norm), norm)
    return torch.where(norm == 0.0, torch.zeros_like(norm), 2.0 * cross / safe)


def tangent_phi_t(bx, by, mx, my, k) -> torch.Tensor:
    a = torch.hypot(mx - bx, my - by)
    half = torch.clamp(0.5 * a * k, -1.0, 1.0)
    return torch.atan2(my - by, mx - bx) - torch.asin(half)


def impact_parameter_t(bx, by, phi, k) -> torch.Tensor:
    nx, ny = -torch.sin(phi), torch.cos(phi)
    sign = torch.where(k >= 0, torch.ones_like(k), -torch.ones_like(k))
    rho = torch.abs(k)
    b2 = bx * bx + by * by
    num = b2 * rho + 2.0 * sign * (bx * nx + by * ny)
    den = torch.hypot(rho * bx + sign * nx, rho * by + sign * ny) + 1.0
    return torch.abs(num / den)


def curvature_to_qop_t(k, theta, bfield_z: float) -> torch.Tensor:
    return -k * torch.sin(theta) / (PT_PER_TESLA_MM * bfield_z)


def qop_to_curvature_t(qop, theta, bfield_z: float) -> torch.Tensor:
    sin_theta = torch.sin(theta)
    safe = torch.where(sin_theta == 0.0, torch.ones_like(sin_theta), sin_theta)
    k = -qop * PT_PER_TESLA_MM * bfield_z / safe
    return torch.where(sin_theta == 0.0, torch.zeros_like(k), k)


def arc_and_distance_t(bx, by, phi, k, px, py) -> tuple[torch.Tensor, torch.Tensor]:
    dx, dy = px - bx, py - by
    cos_phi, sin_phi = torch.cos(phi), torch.sin(phi)
    along = dx * cos_phi + dy * sin_phi
    perp = -dx * sin_phi + dy * cos_phi
    d2 = dx * dx + dy * dy
    d = (2.0 * perp - k * d2) / (1.0 + torch.hypot(k * dx + sin_phi, k * dy - cos_phi))
    curved = torch.abs(k) > MIN_CURVATURE
    safe_k = torch.where(curved, k, torch.ones_like(k))
    s = torch.where(curved, torch.atan2(k * along, 1.0 - k * perp) / safe_k, along)
    return s, d
