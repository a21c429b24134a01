"""Diagnose what happens when we talk to an unDNEMO device over UDP."""

import socket
import sys
import time


def diagnose_connection(host, port=49494):
    """Send VERSION and ACT_CH_IDX raw and show exactly what comes back."""

    print(f"\n=== Opening UDP socket to {host}:{port} ===")
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.settimeout(2.0)
    try:
        sock.connect((host, port))
    except OSError as e:
        print(f"Could not resolve or connect: {e}")
        sock.close()
        return False
    print(f"Local address: {sock.getsockname()}")

    ok = True
    for command in ("VERSION", "ACT_CH_IDX", "CH_INFO 1"):
        print(f"\n=== Sending {command!r} ===")
        start = time.time()
        sock.send(command.encode("ascii") + b"\r")

        try:
            data = sock.recv(1024)
        except socket.timeout:
            print("*** NO RESPONSE (timeout) ***")
            ok = False
            continue
        except ConnectionRefusedError:
            print("*** ICMP port unreachable: nothing listening on that port ***")
            ok = False
            continue

        elapsed_ms = (time.time() - start) * 1000
        decoded = data.decode("ascii", errors="replace")
        print(f"RX ({elapsed_ms:.1f} ms): {decoded!r}")

        if not decoded.startswith("ACK"):
            print("*** Device did not acknowledge ***")
            ok = False

    if not ok:
        print("\nPossible reasons:")
        print("1. Wrong address or port (default port is 49494)")
        print("2. Firewall dropping UDP")
        print("3. Device firmware does not support this command set")

    sock.close()
    print("\nSocket closed")
    return ok


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("usage: diagnose_connection.py HOST [PORT]")
        sys.exit(2)
    host = sys.argv[1]
    port = int(sys.argv[2]) if len(sys.argv) > 2 else 49494
    sys.exit(0 if diagnose_connection(host, port) else 1)
