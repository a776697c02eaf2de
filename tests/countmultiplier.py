"""Transform program driven by the integration tests.

Reads line protocol on stdin and writes each metric back with the numeric
field named by FIELD_NAME doubled. Exits with status 1 on malformed input or
a non-numeric field, like a strict real-world transform would.

Environment switches:
    EXIT_AFTER=N        exit with status 3 after emitting N metrics
    OUTPUT_COPIES=N     emit every transformed metric N times
    STDERR_BANNER=text  write text to stderr on startup
    IGNORE_EOF=1        keep running after stdin is closed
    IGNORE_SIGTERM=1    ignore SIGTERM (only SIGKILL stops the program)
    CLOSE_STDIN=1       close stdin on startup and idle without reading
"""

from __future__ import annotations

import os
import signal
import sys
import time

from metricexecd.codec import DecodeError, LineProtocolEncoder, LineProtocolParser
from metricexecd.metric import Unsigned


def _double(value: object) -> object:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"field value {value!r} is not numeric")
    if isinstance(value, Unsigned):
        return Unsigned(value * 2)
    return value * 2


def main() -> int:
    field_name = os.environ.get("FIELD_NAME", "count")
    exit_after = int(os.environ.get("EXIT_AFTER", "0"))
    copies = int(os.environ.get("OUTPUT_COPIES", "1"))
    banner = os.environ.get("STDERR_BANNER")
    if os.environ.get("IGNORE_SIGTERM"):
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
    if banner:
        print(banner, file=sys.stderr, flush=True)
    if os.environ.get("CLOSE_STDIN"):
        os.close(0)
        while True:
            time.sleep(1)

    parser = LineProtocolParser()
    encoder = LineProtocolEncoder()
    stdin = sys.stdin.buffer
    stdout = sys.stdout.buffer
    emitted = 0

    while True:
        chunk = stdin.read1(4096)
        items = list(parser.feed(chunk)) if chunk else list(parser.flush())
        for item in items:
            if isinstance(item, DecodeError):
                print(f"ERR {item}", file=sys.stderr, flush=True)
                return 1
            value = item.fields.get(field_name)
            if value is None:
                print(f"ERR field {field_name!r} missing", file=sys.stderr, flush=True)
                return 1
            try:
                item.fields[field_name] = _double(value)
            except TypeError as exc:
                print(f"ERR {exc}", file=sys.stderr, flush=True)
                return 1
            payload = encoder.encode(item)
            for _ in range(copies):
                stdout.write(payload)
            stdout.flush()
            emitted += 1
            if exit_after and emitted >= exit_after:
                return 3
        if not chunk:
            break

    if os.environ.get("IGNORE_EOF"):
        while True:
            time.sleep(1)
    return 0


if __name__ == "__main__":
    sys.exit(main())
