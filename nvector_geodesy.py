r"""N-Vector Geodesy: n-vector positions on a reference ellipsoid.

About this library
==================

This implementation represents horizontal positions as n-vectors in an
Earth-centered, Earth-fixed (ECEF) frame, and provides conversions between
longitude/latitude, n-vectors and "p-vectors" (Cartesian positions on the surface of
a reference ellipsoid), along with a handful of geodesic operations: distance,
azimuth, the direct ("forward") problem, interpolation and the intersection of two
geodesic segments.

Every function in this module works on a *single* position. An n-vector is a numpy
array of shape ``(3,)``; a rotation matrix is an array of shape ``(3, 3)``. The
:class:`LonLat`, :class:`NVector` and :class:`PVector` value types wrap these arrays
and carry the conversions as methods.

.. warning:: N-vectors are expected to be unit vectors. This library does **not**
  check that inputs have unit norm. N-vectors produced by :func:`lonlat_to_nvector`
  will be properly normalized, but :func:`nvector_interpolate` does not normalize its
  result unless asked to.


About the n-vector system
=========================

The "n-vector" representation of horizontal position represents each point on the
surface of the earth as the unit normal vector to the reference ellipsoid at that
point ([Gade2010]_, [GadeExplained]_). Unlike longitude and latitude, it has no
singularities at the poles or at the antimeridian.

The reference frame used here has:

* The ``z`` dimension along the Earth's rotation axis.
* The North Pole (90°N, undefined/arbitrary°E) at ``(0,0,1)``.
* The point 0°N, 0°E at ``(1,0,0)``.
* The point 0°N, 90°E at ``(0,1,0)``.

This is the ``e`` frame of [Brodtkorb]_ (``nvector.E_rotation("e")``), and the usual
mental model of a globe with North "up".

The ellipsoid-dependent conversions (:func:`nvector_to_pvector`,
:func:`pvector_to_nvector`) are closed-form. In particular the p-vector to n-vector
conversion uses the exact algebraic solution from [Gade2010]_, so there is no
iteration count or convergence threshold to tune.

References
==========

.. [Gade2010] Kenneth Gade. A nonsingular horizontal position representation.
  The Journal of Navigation, 63(3):395–417, 2010.
  `DOI: 10.1017/S0373463309990415 <https://doi.org/10.1017/S0373463309990415>`_.

.. [GadeExplained] Kenneth Gade. N-vector explained.
  https://www.ffi.no/en/research/n-vector/n-vector-explained.

.. [Brodtkorb] Per A. Brodtkorb. nvector.
  `Documentation <https://nvector.readthedocs.io/>`_.
  `PyPI <https://pypi.org/project/nvector>`_.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, NamedTuple, Protocol, TypeAlias, runtime_checkable

import numpy as np
from numpy.typing import ArrayLike, NDArray


logger = logging.getLogger(__name__)

Vec3: TypeAlias = NDArray[np.float64]
Matrix3: TypeAlias = NDArray[np.float64]

# Mean Earth radius, for spherical distance and forward calculations.
EARTH_RADIUS_MEAN_M = 6_371_000.0

# Tolerance (unit-sphere radians) for a point to count as lying on a segment.
# Roughly 4 cm at the surface of the Earth.
INTERSECTION_TOLERANCE = 1e-9

_UNIT_Z = np.array([0.0, 0.0, 1.0])


## Errors


class GeodesyError(Exception):
    r"""Base class for errors reported by this library."""


class InvalidLatitudeError(GeodesyError, ValueError):
    r"""A latitude outside of ``[-90°, 90°]`` was given.

    :param lat: The rejected latitude, in degrees.
    """

    def __init__(self, lat: float) -> None:
        super().__init__(f"invalid latitude: {lat:f}")
        self.lat = lat


class NoIntersectionError(GeodesyError):
    r"""Two geodesic segments do not intersect.

    Returned (not raised) by :func:`intersection` and :func:`nvector_intersection`.
    """

    def __init__(self) -> None:
        super().__init__("no intersection")


## Linear algebra


def _as_vec3(v: ArrayLike) -> Vec3:
    vv = np.asarray(v, dtype=np.float64)
    if vv.shape != (3,):
        raise ValueError("Input is not a valid n-vector array shape.")
    return vv


def _cross(u: Vec3, v: Vec3) -> Vec3:
    return np.cross(u, v)


def _dot(u: Vec3, v: Vec3) -> float:
    return float(np.dot(u, v))


def _magnitude(v: Vec3) -> float:
    return float(np.linalg.norm(v))


def _matvec(m: Matrix3, v: Vec3) -> Vec3:
    return m @ v


def _transpose(m: Matrix3) -> Matrix3:
    return np.ascontiguousarray(m.T)


def _normalize(v: Vec3) -> Vec3:
    r"""Scale ("normalize") a vector to unit norm.

    :param v: The vector to normalize.

    :returns: Normalized vector of the same dtype and shape as ``v``.

    .. warning:: This function might return ``inf`` or ``nan`` if the norm is 0.
    """
    # Scale down before computing the norm, to avoid precision loss.
    v_max = np.max(np.abs(v))
    # Add a tiny offset (the smallest non-subnormal) to avoid divide-by-zero.
    tiny = np.finfo(v.dtype).tiny
    if v_max <= tiny:
        v_max += tiny
    w = v / v_max

    # NOTE: This might result in `inf` or `nan` if the norm is 0.
    return w / np.linalg.norm(w)


def _wrap_longitude(lon: float) -> float:
    r"""Wrap a longitude in radians into ``[-π, π)``."""
    # Python's modulo is floored, so this also handles lon < -π.
    wrapped = (lon + math.pi) % (2.0 * math.pi) - math.pi
    # A tiny negative ``lon + π`` rounds up to a full turn, landing on +π.
    return -math.pi if wrapped >= math.pi else wrapped


## Reference ellipsoid


@dataclass(frozen=True)
class Ellipsoid:
    r"""A reference ellipsoid of revolution.

    :param a: Semi-major (equatorial) axis.
    :param b: Semi-minor (polar) axis. Must satisfy ``a >= b > 0``.
    """

    a: float
    b: float

    def __post_init__(self) -> None:
        if not (self.a >= self.b > 0):
            raise ValueError(f"Invalid ellipsoid axes: a={self.a}, b={self.b}.")

    @classmethod
    def from_flattening(cls, a: float, f: float) -> "Ellipsoid":
        r"""Construct an ellipsoid from its semi-major axis and flattening ``(a-b)/a``."""
        return cls(a, a * (1.0 - f))

    @property
    def flattening(self) -> float:
        return (self.a - self.b) / self.a

    @property
    def eccentricity_squared(self) -> float:
        return 1.0 - (self.b * self.b) / (self.a * self.a)


WGS84 = Ellipsoid.from_flattening(6_378_137.0, 1.0 / 298.257223563)
GRS80 = Ellipsoid.from_flattening(6_378_137.0, 1.0 / 298.257222101)


## Array-level conversions


def lonlat_to_nvector(lon: float, lat: float, radians: bool = False) -> Vec3:
    r"""Convert longitude and latitude to n-vector.

    :param lon: Longitude, in degrees or radians (see ``radians=``).
    :param lat: Latitude, in degrees or radians (see ``radians=``).
    :param radians: If true, input is expected in radians. Otherwise, input is expected
      in degrees (the default setting).

    :returns: An n-vector array of shape ``(3,)``.

    .. note:: The latitude is not validated here. Use :meth:`LonLat.from_degrees` to
      reject latitudes outside ``[-90°, 90°]``.
    """
    if not radians:
        lon = math.radians(lon)
        lat = math.radians(lat)

    cos_lat = np.cos(lat)
    nvect: Vec3 = np.array(
        [
            # x: points to 0°E, 0°N
            cos_lat * np.cos(lon),
            # y: points to 90°E, 0°N
            cos_lat * np.sin(lon),
            # z: points to the North Pole
            np.sin(lat),
        ],
        dtype=np.float64,
    )
    return nvect


def nvector_to_lonlat(nvect: ArrayLike, radians: bool = False) -> tuple[float, float]:
    r"""Convert n-vector to longitude and latitude.

    :param nvect: n-vector array of shape ``(3,)``.
    :param radians: If true, output is returned in radians. Otherwise, output is returned
      in degrees (the default setting).

    :returns: A pair ``(lon, lat)``. Longitude is wrapped into ``[-180°, 180°)``.
      Longitude at the North and South Poles is arbitrary, and depends on whatever Numpy
      ``atan2(0,0)`` returns.
    """
    x, y, z = _as_vec3(nvect)

    equatorial_component = math.sqrt(x * x + y * y)
    lat = math.atan2(z, equatorial_component)
    lon = _wrap_longitude(math.atan2(y, x))

    if not radians:
        lon = math.degrees(lon)
        lat = math.degrees(lat)

    return lon, lat


def nvector_to_pvector(nvect: ArrayLike, ellipsoid: Ellipsoid) -> Vec3:
    r"""Convert an n-vector to the p-vector of the same point on an ellipsoid surface.

    The p-vector is found by scaling along the ellipsoid normal:

    .. math::

        k = (a/b)^2, \qquad
        c = \frac{b}{\sqrt{z^2 + k y^2 + k x^2}}, \qquad
        p = (c k x,\; c k y,\; c z)
    """
    x, y, z = _as_vec3(nvect)
    a, b = ellipsoid.a, ellipsoid.b

    axis_ratio_sq = (a * a) / (b * b)
    coeff = b / np.sqrt(z * z + axis_ratio_sq * y * y + axis_ratio_sq * x * x)

    pvect: Vec3 = np.array(
        [coeff * axis_ratio_sq * x, coeff * axis_ratio_sq * y, coeff * z],
        dtype=np.float64,
    )
    return pvect


def pvector_to_nvector(pvect: ArrayLike, ellipsoid: Ellipsoid) -> Vec3:
    r"""Convert a p-vector on an ellipsoid to its n-vector.

    Uses the closed-form solution of [Gade2010]_ (Appendix B), adapted to a frame
    with ``z`` along the polar axis. There is no iteration.

    .. warning:: The result is undefined (``nan``) at the exact center of the
      ellipsoid.
    """
    x, y, z = _as_vec3(pvect)
    e2 = ellipsoid.eccentricity_squared
    e4 = e2 * e2
    a2 = ellipsoid.a * ellipsoid.a

    # Squared equatorial distance and scaled squared polar distance.
    equatorial_sq = x * x + y * y
    p = equatorial_sq / a2
    q = (1.0 - e2) / a2 * z * z

    r = (p + q - e4) / 6.0
    s = e4 * p * q / (4.0 * r**3)
    t = np.cbrt(1.0 + s + np.sqrt(s * (2.0 + s)))
    u = r * (1.0 + t + 1.0 / t)
    v = np.sqrt(u * u + e4 * q)
    w = 0.5 * e2 * (u + v - q) / v
    k = np.sqrt(u + v + w * w) - w
    d = k * np.sqrt(equatorial_sq) / (k + e2)

    coeff = 1.0 / np.sqrt(d * d + z * z)
    horizontal_scale = coeff * k / (k + e2)

    nvect: Vec3 = np.array(
        [horizontal_scale * x, horizontal_scale * y, coeff * z],
        dtype=np.float64,
    )
    return nvect


def nvector_rotation_matrix(nvect: ArrayLike) -> Matrix3:
    r"""Rotation matrix from the local North-East-Down frame to the Earth frame.

    The columns of the result are the unit North, East and Down vectors at ``nvect``,
    expressed in the Earth frame. Its transpose maps Earth-frame vectors to NED
    components.

    .. warning:: The NED frame is undefined at the poles, where East cannot be
      determined. The result will contain ``nan`` there.
    """
    nvect = _as_vec3(nvect)

    east = _cross(_UNIT_Z, nvect)
    if _magnitude(east) == 0.0:
        logger.debug("NED frame is degenerate at n-vector %s.", nvect)
    east = _normalize(east)
    north = _normalize(_cross(nvect, east))

    rot: Matrix3 = np.column_stack((north, east, -nvect))
    return rot


## Array-level geodesics


def nvector_arc_angle(v1: ArrayLike, v2: ArrayLike) -> float:
    r"""Compute the arc angle between two n-vectors.

    Note that this is the great-circle distance on the unit sphere.
    To get great-circle distance on the surface of a non-unit sphere, multiply
    this result by the sphere radius (see :func:`nvector_spherical_distance`).
    """
    v1, v2 = _as_vec3(v1), _as_vec3(v2)
    # atan2 keeps full precision for both tiny and near-antipodal separations,
    # where acos(dot) would not.
    return math.atan2(_magnitude(_cross(v1, v2)), _dot(v1, v2))


def nvector_spherical_distance(v1: ArrayLike, v2: ArrayLike, radius: float) -> float:
    r"""Great-circle distance between two n-vectors on a sphere of the given radius."""
    return nvector_arc_angle(v1, v2) * radius


def nvector_azimuth(v1: ArrayLike, v2: ArrayLike, ellipsoid: Ellipsoid) -> float:
    r"""Azimuth (bearing) from ``v1`` toward ``v2`` on an ellipsoid.

    The straight-line difference of the two p-vectors is decomposed in the NED frame
    at ``v1``, and the azimuth is the angle of its horizontal part.

    :returns: Azimuth in radians, clockwise from North, in ``(-π, π]``.
    """
    v1 = _as_vec3(v1)
    delta_e = nvector_to_pvector(v2, ellipsoid) - nvector_to_pvector(v1, ellipsoid)

    rot_ne = _transpose(nvector_rotation_matrix(v1))
    delta_n = _matvec(rot_ne, delta_e)

    azimuth = math.atan2(delta_n[1], delta_n[0])
    # atan2(-0.0, x < 0) is -π; due South is reported as +π.
    return math.pi if azimuth == -math.pi else azimuth


def nvector_direct(
    initial_position_nvect: ArrayLike,
    distance: float,
    initial_azimuth_rad: float,
    radius: float = 1.0,
) -> Vec3:
    r"""Solve the "forward" or "direct" geodesic problem on a sphere.

    Computes a new location from a starting point, a distance, and an initial azimuth.

    :param initial_position_nvect: Starting point, n-vector.
    :param distance: Distance travelled along the great circle, in the same units as
      ``radius``.
    :param initial_azimuth_rad: Initial bearing, a.k.a. forward azimuth, radians.
    :param radius: Sphere radius. The default of 1 means ``distance`` is an arc angle.

    :returns: The n-vector of the destination.

    See N-Vector Example 2: https://www.ffi.no/en/research/n-vector/#example_2
    """
    initial_position_nvect = _as_vec3(initial_position_nvect)

    # Construct the initial direction vector defined by the forward azimuth.
    #  1. Use the right-hand-rule to obtain a unit vector that points exactly East.
    #  2. Use the right-hand-rule to obtain a unit vector that points exactly North.
    #     We don't need to normalize this result, because the inputs are already known
    #     to be orthogonal unit vectors, so their cross product must be also a unit
    #     vector.
    #  3. Compute the components of the direction vector decomposed into the East and
    #     North unit vectors, and add them to find the direction vector itself.
    unit_east = _normalize(_cross(initial_position_nvect, -_UNIT_Z))
    unit_north = _cross(initial_position_nvect, unit_east)
    initial_direction = (
        unit_north * np.cos(initial_azimuth_rad) +
        unit_east * np.sin(initial_azimuth_rad)
    )

    # Great-circle angle travelled.
    arc_angle = distance / radius

    final_position: Vec3 = (
        initial_position_nvect * np.cos(arc_angle) +
        initial_direction * np.sin(arc_angle)
    )
    return final_position


def nvector_interpolate(
    v1: ArrayLike, v2: ArrayLike, frac: float, normalize: bool = False
) -> Vec3:
    r"""Linearly interpolate between two n-vectors, component by component.

    :param frac: Fraction of the way from ``v1`` to ``v2``. ``0`` returns ``v1`` and
      ``1`` returns ``v2``, exactly.
    :param normalize: If true, scale the result back to unit norm.

    .. warning:: Without ``normalize=True`` the result is generally shorter than unit
      length, and is not a valid n-vector.
    """
    v1, v2 = _as_vec3(v1), _as_vec3(v2)
    result: Vec3 = (1.0 - frac) * v1 + frac * v2
    if normalize:
        result = _normalize(result)
    return result


def _on_segment(a: Vec3, b: Vec3, point: Vec3) -> bool:
    r"""Check whether ``point`` lies on the shorter great-circle arc from ``a`` to ``b``."""
    d_ab = nvector_arc_angle(a, b)
    d_ai = nvector_arc_angle(a, point)
    d_bi = nvector_arc_angle(b, point)
    return abs(d_ab - d_ai - d_bi) <= INTERSECTION_TOLERANCE


def nvector_intersection(
    v1a: ArrayLike, v1b: ArrayLike, v2a: ArrayLike, v2b: ArrayLike
) -> tuple[Vec3, NoIntersectionError | None]:
    r"""Intersect the geodesic segment ``v1a``–``v1b`` with ``v2a``–``v2b``.

    Two great circles always cross at two antipodal points. The one on the same
    hemisphere as ``v1a`` is chosen, then checked against both segments.

    :returns: A pair ``(nvect, error)``. The crossing point of the two great circles is
      *always* returned. ``error`` is a :class:`NoIntersectionError` if that point does
      not lie on both segments, and ``None`` otherwise.
    """
    v1a, v1b, v2a, v2b = (_as_vec3(v) for v in (v1a, v1b, v2a, v2b))

    normal_1 = _cross(v1a, v1b)
    normal_2 = _cross(v2a, v2b)
    crossing = _cross(normal_1, normal_2)

    # Select the crossing point on the same side of the Earth as the first segment.
    if _dot(crossing, v1a) < 0:
        crossing = -crossing

    # Segment checks use arc angles, which don't depend on the vector length.
    error = None
    if not (_on_segment(v1a, v1b, crossing) and _on_segment(v2a, v2b, crossing)):
        logger.debug("Great-circle crossing %s is outside the segments.", crossing)
        error = NoIntersectionError()

    return _normalize(crossing), error


## Value types


@runtime_checkable
class SupportsNVector(Protocol):
    def to_nvector(self) -> "NVector": ...


@runtime_checkable
class SupportsMagnitude(Protocol):
    def magnitude(self) -> float: ...


def _readonly_vec3(v: ArrayLike) -> Vec3:
    vv = _as_vec3(v).copy()
    vv.flags.writeable = False
    return vv


@dataclass(frozen=True)
class LonLat:
    r"""Longitude and latitude, in radians.

    Longitude is wrapped into ``[-π, π)`` on construction. A latitude outside
    ``[-π/2, π/2]`` raises :class:`InvalidLatitudeError`.
    """

    lon: float
    lat: float

    def __post_init__(self) -> None:
        if not (-0.5 * math.pi <= self.lat <= 0.5 * math.pi):
            raise InvalidLatitudeError(math.degrees(self.lat))
        object.__setattr__(self, "lon", _wrap_longitude(float(self.lon)))
        object.__setattr__(self, "lat", float(self.lat))

    @classmethod
    def from_degrees(cls, lon: float, lat: float) -> "LonLat":
        r"""Construct from degrees, rejecting latitudes outside ``[-90°, 90°]``.

        :raises InvalidLatitudeError: Carrying ``lat`` exactly as given.
        """
        if not (-90.0 <= lat <= 90.0):
            raise InvalidLatitudeError(lat)
        return cls(math.radians(lon), math.radians(lat))

    def to_degrees(self) -> tuple[float, float]:
        return math.degrees(self.lon), math.degrees(self.lat)

    def to_nvector(self) -> "NVector":
        return NVector(lonlat_to_nvector(self.lon, self.lat, radians=True))

    def __str__(self) -> str:
        lon, lat = self.to_degrees()
        return f"({lon:.6f}, {lat:.6f})"


class _VectorValue:
    vec: Vec3

    def __post_init__(self) -> None:
        object.__setattr__(self, "vec", _readonly_vec3(self.vec))

    def __eq__(self, other: Any) -> bool:
        if type(other) is not type(self):
            return NotImplemented
        return bool(np.array_equal(self.vec, other.vec))

    __hash__ = None  # type: ignore[assignment]

    def magnitude(self) -> float:
        return _magnitude(self.vec)


@dataclass(frozen=True, eq=False)
class NVector(_VectorValue):
    r"""An n-vector: the unit normal to the reference surface at a position."""

    vec: Vec3

    def to_nvector(self) -> "NVector":
        return self

    def to_lonlat(self) -> LonLat:
        lon, lat = nvector_to_lonlat(self.vec, radians=True)
        return LonLat(lon, lat)

    def to_pvector(self, ellipsoid: Ellipsoid) -> "PVector":
        return PVector(nvector_to_pvector(self.vec, ellipsoid))

    def normalized(self) -> "NVector":
        return NVector(_normalize(self.vec))

    def rotation_matrix(self) -> Matrix3:
        return nvector_rotation_matrix(self.vec)

    def spherical_distance(self, other: "NVector", radius: float) -> float:
        return nvector_spherical_distance(self.vec, other.vec, radius)

    def azimuth(self, other: "NVector", ellipsoid: Ellipsoid) -> float:
        return nvector_azimuth(self.vec, other.vec, ellipsoid)

    def forward(self, azimuth: float, distance: float, radius: float) -> "NVector":
        r"""The position reached by travelling ``distance`` along ``azimuth``, on a sphere."""
        return NVector(nvector_direct(self.vec, distance, azimuth, radius))

    def interpolate(
        self, other: "NVector", frac: float, normalize: bool = False
    ) -> "NVector":
        return NVector(nvector_interpolate(self.vec, other.vec, frac, normalize=normalize))


@dataclass(frozen=True, eq=False)
class PVector(_VectorValue):
    r"""A Cartesian position on the surface of an ellipsoid.

    Only meaningful together with the :class:`Ellipsoid` that produced it.
    """

    vec: Vec3

    def to_nvector_on(self, ellipsoid: Ellipsoid) -> NVector:
        return NVector(pvector_to_nvector(self.vec, ellipsoid))


class Intersection(NamedTuple):
    r"""Result of :func:`intersection`.

    ``point`` is always set; ``error`` tells whether it lies on both segments.
    ``point`` is scaled to unit length, not the raw cross product of the two
    great-circle normals; the direction (and so the position) is the same.
    """

    point: NVector
    error: NoIntersectionError | None

    @property
    def ok(self) -> bool:
        return self.error is None


def intersection(nv1a: NVector, nv1b: NVector, nv2a: NVector, nv2b: NVector) -> Intersection:
    r"""Intersect two geodesic segments given by n-vector endpoint pairs.

    See :func:`nvector_intersection`. Callers must check ``error`` even though a point
    is always returned.
    """
    point, error = nvector_intersection(nv1a.vec, nv1b.vec, nv2a.vec, nv2b.vec)
    return Intersection(NVector(point), error)
