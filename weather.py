"""
Weather Module - Air density calculation, altitude correction, wind projection.

Weather values arrive from an external source as plain numbers; nothing here
performs network access or unit guessing.
"""

from dataclasses import dataclass, replace
from typing import Optional

import numpy as np


@dataclass
class AtmosphericConditions:
    """Atmospheric conditions during a test ride."""
    wind_speed_ms: float = 0.0        # Wind speed at rider height in m/s
    wind_direction_deg: float = 0.0   # Direction wind is coming FROM (0=N, 90=E)
    temperature_c: float = 20.0       # Temperature in Celsius
    humidity_pct: float = 50.0        # Relative humidity (0-100)
    pressure_hpa: Optional[float] = None  # Station pressure in hPa (None = from elevation)
    elevation_m: float = 0.0          # Elevation used when pressure is unknown

    @property
    def wind_speed_kmh(self) -> float:
        return self.wind_speed_ms * 3.6

    @property
    def air_density(self) -> float:
        return calculate_air_density(
            self.temperature_c,
            self.humidity_pct,
            elevation_m=self.elevation_m,
            pressure_hpa=self.pressure_hpa
        )

    def apply_to(self, params):
        """
        Return a copy of trial parameters carrying these conditions.

        Args:
            params: TrialParameters to update

        Returns:
            New TrialParameters with wind and air density replaced
        """
        return replace(
            params,
            wind_speed_ms=self.wind_speed_ms,
            wind_direction_deg=self.wind_direction_deg,
            air_density=self.air_density
        )


# Physical constants
R_DRY = 287.05      # Specific gas constant for dry air (J/(kg·K))
R_VAPOR = 461.495   # Specific gas constant for water vapor (J/(kg·K))
SEA_LEVEL_PRESSURE_HPA = 1013.25
DENSITY_SCALE_HEIGHT_M = 9000.0
WIND_HEIGHT_FACTOR = 0.6  # 10 m forecast wind -> rider height


def compute_air_density(temp_c: float, pressure_hpa: float, humidity_pct: float) -> float:
    """
    Density of humid air as the sum of dry-air and water-vapour partial densities.

    Args:
        temp_c: Air temperature in Celsius
        pressure_hpa: Station pressure in hPa
        humidity_pct: Relative humidity (0-100)

    Returns:
        Air density in kg/m³
    """
    temp_k = temp_c + 273.15

    # Tetens saturation pressure, Pa
    saturation_pa = 610.78 * 10 ** (7.5 * temp_c / (temp_c + 237.3))
    vapour_pa = saturation_pa * humidity_pct / 100.0
    dry_pa = pressure_hpa * 100.0 - vapour_pa

    return dry_pa / (R_DRY * temp_k) + vapour_pa / (R_VAPOR * temp_k)


def pressure_from_elevation(elevation_m: float) -> float:
    """
    Barometric pressure at an elevation (standard atmosphere).

    Args:
        elevation_m: Elevation in meters above sea level

    Returns:
        Pressure in hPa
    """
    return SEA_LEVEL_PRESSURE_HPA * (1 - 2.25577e-5 * elevation_m) ** 5.25588


def calculate_air_density(
    temperature_c: float,
    humidity_pct: float,
    elevation_m: float = 0.0,
    pressure_hpa: Optional[float] = None
) -> float:
    """
    Air density from ride conditions, rounded to 4 decimal places.

    Pressure takes precedence over elevation when both are given.

    Args:
        temperature_c: Temperature in Celsius
        humidity_pct: Relative humidity (0-100)
        elevation_m: Elevation used to estimate pressure
        pressure_hpa: Measured station pressure in hPa

    Returns:
        Air density in kg/m³
    """
    if pressure_hpa is None:
        pressure_hpa = pressure_from_elevation(elevation_m)

    rho = compute_air_density(temperature_c, pressure_hpa, humidity_pct)
    return round(rho, 4)


def altitude_adjusted_density(
    air_density,
    elevation_m,
    scale_height_m: float = DENSITY_SCALE_HEIGHT_M
):
    """
    Exponential decay of air density with elevation.

    Works on scalars and numpy arrays alike.

    Args:
        air_density: Reference air density in kg/m³
        elevation_m: Elevation(s) in meters
        scale_height_m: Atmospheric scale height

    Returns:
        Adjusted density (same shape as elevation_m)
    """
    return air_density * np.exp(-np.asarray(elevation_m, dtype=float) / scale_height_m)


def project_wind(
    wind_speed_ms: float,
    wind_direction_deg: float,
    bearing_deg
):
    """
    Headwind component of the wind along the direction of travel.

    A tailwind comes back negative.

    Args:
        wind_speed_ms: Wind speed in m/s
        wind_direction_deg: Direction wind is coming FROM (0=N, 90=E)
        bearing_deg: Direction(s) of travel (0=N, 90=E), scalar or array

    Returns:
        Headwind component in m/s (positive = headwind)
    """
    relative_angle = np.radians(np.asarray(bearing_deg, dtype=float) - wind_direction_deg)
    return wind_speed_ms * np.cos(relative_angle)


def wind_at_rider_height(
    wind_speed_kmh_10m: float,
    factor: float = WIND_HEIGHT_FACTOR
) -> float:
    """
    Convert a 10 m forecast wind speed (km/h) to rider-height wind (m/s).

    Args:
        wind_speed_kmh_10m: Wind speed at 10 m in km/h
        factor: Height reduction factor

    Returns:
        Wind speed in m/s, rounded to 2 decimals
    """
    return round(wind_speed_kmh_10m / 3.6 * factor, 2)
