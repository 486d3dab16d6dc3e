#!/usr/bin/env python3
"""
Command line NTRIP rover client.

Connects to a caster, keeps a GGA report going and forwards the RTCM
corrections to one of:

- a Swift/Piksi receiver over SBP TCP (--sbp-host); its MsgPosLLH fixes
  are then used for the GGA
- a serial port (--serial)
- nowhere (bytes are only counted / hex dumped with --verbose)

Every option can also be given through NTRIP_* environment variables.
"""

import argparse
import logging
import os
import signal
import sys
import threading
from typing import Mapping, Optional

import serial
from sbp.client import Framer
from sbp.client.drivers.network_drivers import TCPDriver
from sbp.navigation import MsgPosLLH

from ntrip_client import NtripClient, StreamSettings
from nmea_gga import build_gga

TRUTHY = ("1", "true", "True", "YES", "yes", "y")


def _float_or_none(value: Optional[str]) -> Optional[float]:
    return float(value) if value not in (None, "") else None


def build_parser(env: Optional[Mapping[str, str]] = None) -> argparse.ArgumentParser:
    env = os.environ if env is None else env
    parser = argparse.ArgumentParser(description="NTRIP rover client")
    parser.add_argument("--host", default=env.get("NTRIP_HOST"), help="caster host")
    parser.add_argument("--port", type=int, default=int(env.get("NTRIP_PORT", "2101")), help="caster port")
    parser.add_argument("--mountpoint", default=env.get("NTRIP_MOUNTPOINT", ""), help="mount point, no spaces")
    parser.add_argument("--user", default=env.get("NTRIP_USER", ""))
    parser.add_argument("--password", default=env.get("NTRIP_PASS", ""))

    parser.add_argument("--lat", type=float, default=_float_or_none(env.get("NTRIP_LAT")), help="fixed latitude for GGA")
    parser.add_argument("--lon", type=float, default=_float_or_none(env.get("NTRIP_LON")), help="fixed longitude for GGA")
    parser.add_argument("--alt", type=float, default=_float_or_none(env.get("NTRIP_ALT")) or 0.0, help="altitude in metres")
    parser.add_argument("--gga-interval", type=float, default=float(env.get("NTRIP_GGA_INTERVAL", "1.0")),
                        help="seconds between GGA reports")
    parser.add_argument("--keepalive", action="store_true", default=env.get("NTRIP_KEEPALIVE", "0") in TRUTHY,
                        help="enable TCP keepalive on the caster socket")

    parser.add_argument("--sbp-host", default=env.get("NTRIP_SBP_HOST"), help="Piksi receiver to forward RTCM to")
    parser.add_argument("--sbp-port", type=int, default=int(env.get("NTRIP_SBP_PORT", "55555")))
    parser.add_argument("--serial", default=env.get("NTRIP_SERIAL"), help="serial device to forward RTCM to")
    parser.add_argument("--baud", type=int, default=int(env.get("NTRIP_BAUD", "115200")))
    parser.add_argument("-v", "--verbose", action="store_true", default=env.get("NTRIP_VERBOSE", "0") in TRUTHY)
    return parser


def parse_args(argv=None, env: Optional[Mapping[str, str]] = None) -> argparse.Namespace:
    parser = build_parser(env)
    args = parser.parse_args(argv)
    if not args.host:
        parser.error("caster host required (--host or NTRIP_HOST)")
    if (args.lat is None) != (args.lon is None):
        parser.error("--lat and --lon go together")
    return args


def settings_from_args(args: argparse.Namespace) -> StreamSettings:
    return StreamSettings(report_interval=args.gga_interval, keepalive=args.keepalive)


def install_signal_handlers(stop_event: threading.Event):
    def stop_handler(sig, frame):
        logging.info("Signal received, stopping...")
        stop_event.set()

    signal.signal(signal.SIGINT, stop_handler)
    signal.signal(signal.SIGTERM, stop_handler)


def fixed_position_loop(client: NtripClient, args: argparse.Namespace, stop_event: threading.Event):
    """Refresh the GGA timestamp until stopped or the session drops."""
    while not stop_event.wait(args.gga_interval):
        if not client.is_running():
            logging.warning("NTRIP session ended")
            return
        if args.lat is not None:
            client.update_gga(build_gga(args.lat, args.lon, args.alt))


def sbp_position_loop(client: NtripClient, framer, stop_event: threading.Event, check_interval: float = 0.1):
    """Follow the receiver's MsgPosLLH fixes until stopped or the session drops."""

    def follow_fixes():
        for msg, meta in framer:
            if stop_event.is_set():
                return
            if isinstance(msg, MsgPosLLH):
                try:
                    client.update_gga(build_gga(msg.lat, msg.lon, msg.height))
                except ValueError as exc:
                    logging.warning("Ignoring position fix: %s", exc)

    # a silent receiver blocks the framer, so it gets its own thread
    reader = threading.Thread(target=follow_fixes, name="sbp-reader", daemon=True)
    reader.start()
    while not stop_event.wait(check_interval):
        if not client.is_running():
            logging.warning("NTRIP session ended")
            return
        if not reader.is_alive():
            logging.warning("SBP stream ended")
            return


def run_client(args: argparse.Namespace, stop_event: threading.Event) -> int:
    settings = settings_from_args(args)
    client = NtripClient(args.host, args.port, args.mountpoint, args.user, args.password, settings=settings)
    if client.config is None:
        return 1
    if args.lat is not None:
        client.update_gga(build_gga(args.lat, args.lon, args.alt))

    if args.sbp_host:
        logging.info("Connecting to SBP receiver %s:%d ...", args.sbp_host, args.sbp_port)
        with TCPDriver(args.sbp_host, args.sbp_port, timeout=5, reconnect=True) as driver:
            client.on_data = driver.write
            if not client.run():
                return 1
            with client:
                sbp_position_loop(client, Framer(driver.read, driver.write), stop_event)
    elif args.serial:
        logging.info("Forwarding RTCM to %s @ %d baud", args.serial, args.baud)
        with serial.Serial(args.serial, args.baud, timeout=1) as ser:
            client.on_data = ser.write
            if not client.run():
                return 1
            with client:
                fixed_position_loop(client, args, stop_event)
    else:
        if not client.run():
            return 1
        with client:
            fixed_position_loop(client, args, stop_event)

    if stop_event.is_set():
        logging.info("NTRIP client stopped")
        return 0
    return 0 if client.last_result else 1


def main(argv=None) -> int:
    args = parse_args(argv)
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(message)s")

    stop_event = threading.Event()
    install_signal_handlers(stop_event)
    return run_client(args, stop_event)


if __name__ == "__main__":
    sys.exit(main())
