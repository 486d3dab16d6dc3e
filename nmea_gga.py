"""
GGA (NMEA) sentence builder for the position reports sent to the caster.
"""

from datetime import datetime, timezone
from functools import reduce
from typing import Optional, Tuple


def nmea_checksum(body: str) -> str:
    """XOR of every character between '$' and '*', as two hex digits."""
    return f"{reduce(lambda cs, c: cs ^ ord(c), body, 0):02X}"


def degrees_to_ddmm(value: float) -> Tuple[int, float]:
    d = abs(float(value))
    deg = int(d)
    minutes = round((d - deg) * 60.0, 4)
    if minutes >= 60.0:
        deg += 1
        minutes -= 60.0
    return deg, minutes


def build_gga(
    lat: float,
    lon: float,
    height: Optional[float] = None,
    utc_time: Optional[datetime] = None,
    talker: str = "GP",
    fix: int = 1,
    nsat: int = 8,
    hdop: float = 1.0,
) -> str:
    if not -90.0 <= lat <= 90.0:
        raise ValueError(f"latitude out of range: {lat}")
    if not -180.0 <= lon <= 180.0:
        raise ValueError(f"longitude out of range: {lon}")
    if utc_time is None:
        utc_time = datetime.now(timezone.utc)

    utc_hms = f"{utc_time:%H%M%S}.{utc_time.microsecond // 10000:02d}"
    lat_deg, lat_min = degrees_to_ddmm(lat)
    lon_deg, lon_min = degrees_to_ddmm(lon)
    lat_dir = "N" if lat >= 0 else "S"
    lon_dir = "E" if lon >= 0 else "W"
    height_val = float(height) if height is not None else 0.0

    sentence = (
        f"{talker}GGA,{utc_hms},"
        f"{lat_deg:02d}{lat_min:07.4f},{lat_dir},"
        f"{lon_deg:03d}{lon_min:07.4f},{lon_dir},"
        f"{fix},{nsat:02d},{hdop:.1f},{height_val:.2f},M,0.0,M,,"
    )
    return f"${sentence}*{nmea_checksum(sentence)}\r\n"
