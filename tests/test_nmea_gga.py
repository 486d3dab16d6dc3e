from datetime import datetime, timezone

import pytest

from nmea_gga import build_gga, degrees_to_ddmm, nmea_checksum

NOON = datetime(2024, 1, 2, 12, 35, 19, tzinfo=timezone.utc)


def test_checksum_of_reference_sentence():
    assert nmea_checksum("GPGGA,123519,4807.038,N,01131.000,E,1,08,0.9,545.4,M,46.9,M,,") == "47"


def test_degrees_to_ddmm():
    assert degrees_to_ddmm(48.5) == (48, 30.0)
    assert degrees_to_ddmm(-33.25) == (33, 15.0)
    # minutes that round up to 60 carry into the degrees
    assert degrees_to_ddmm(10.999999999) == (11, 0.0)


def test_build_gga_north_east():
    body = "GPGGA,123519.00,4807.0380,N,01130.0000,E,1,08,1.0,545.40,M,0.0,M,,"
    assert build_gga(48.1173, 11.5, 545.4, utc_time=NOON) == f"${body}*{nmea_checksum(body)}\r\n"


def test_build_gga_south_west():
    sentence = build_gga(-33.5, -70.25, utc_time=NOON, talker="GN")
    fields = sentence.split(",")
    assert fields[0] == "$GNGGA"
    assert fields[2:6] == ["3330.0000", "S", "07015.0000", "W"]
    assert fields[9] == "0.00"
    assert sentence.endswith("\r\n")


def test_build_gga_checksum_matches_body():
    sentence = build_gga(52.5, 13.0, 50.0).strip()
    body, checksum = sentence[1:].split("*")
    assert nmea_checksum(body) == checksum


@pytest.mark.parametrize("lat,lon", [(91.0, 0.0), (-90.5, 0.0), (0.0, 180.5)])
def test_build_gga_rejects_out_of_range(lat, lon):
    with pytest.raises(ValueError):
        build_gga(lat, lon)
