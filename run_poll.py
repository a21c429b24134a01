#!/usr/bin/env python3
"""
Runbook: Poll an unDNEMO device
Expected: scalars on the first read, full channel table after one poll cycle
"""

import argparse
import logging
import sys
import time

from undnemo_lib import UndnemoController
from undnemo_lib.errors import PollFailed
from undnemo_lib.protocol import DEFAULT_PORT


def main():
    parser = argparse.ArgumentParser(description="Poll an unDNEMO device and print its state")
    parser.add_argument("--host", help="Device address")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--filter", default="", help="Channel filter, e.g. 1,2,3")
    parser.add_argument("--timeout", type=float, default=10.0,
                        help="Seconds to wait for the poll cycle (default: 10)")
    parser.add_argument("--set", nargs=2, metavar=("PROPERTY", "VALUE"), action="append",
                        default=[], help="Apply a control after polling (repeatable)")
    parser.add_argument("--fake", action="store_true", help="Use the in-process FakeDevice")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    if not args.fake and not args.host:
        parser.error("--host is required unless --fake is given")

    print("=" * 70)
    print("Runbook: unDNEMO Poll")
    print("=" * 70)
    print(f"Device: {'FakeDevice' if args.fake else f'{args.host}:{args.port}'}")
    print(f"Filter: {args.filter or '(all channels)'}")
    print()

    controller = UndnemoController(channel_filter=args.filter or None)

    try:
        # Step 1: Connect
        print("[1/3] Connecting...")
        if args.fake:
            from fakes.fake_device import FakeDevice
            controller.connect(host="fake", sock=FakeDevice())
        else:
            controller.connect(host=args.host, port=args.port)
        print(f"      Connected, channel filter: {controller.channel_filter}")
        print()

        # Step 2: Read, then wait for the poll cycle to merge
        print("[2/3] Reading scalars and starting poll cycle...")
        snapshot = controller.get_snapshot()
        print(f"      Version: {snapshot.scalars.software_version}")
        print(f"      Active channel: {snapshot.scalars.active_channel_index}")

        start = time.time()
        if not controller.wait_for_poll(timeout=args.timeout):
            print(f"✗ FAIL: Poll cycle did not finish within {args.timeout}s")
            return 1
        print(f"      Poll cycle merged in {time.time() - start:.2f}s")

        try:
            snapshot = controller.get_snapshot()
        except PollFailed as e:
            print("      Poll errors:")
            for line in str(e).splitlines():
                print(f"        {line}")
            snapshot = controller.get_snapshot()
        print()

        for key, value in snapshot.statistics.items():
            print(f"      {key:40} {value}")
        print()

        # Step 3: Controls
        print("[3/3] Applying controls...")
        if not args.set:
            print("      (none requested)")
        for name, value in args.set:
            controller.apply_control(name, value)
            after = controller.get_snapshot()
            print(f"      {name} -> {after.statistics.get(name)}")

        print()
        print("✓ PASS")
        return 0

    finally:
        controller.disconnect()
        print()
        print("Disconnected.")
        print("=" * 70)


if __name__ == "__main__":
    sys.exit(main())
