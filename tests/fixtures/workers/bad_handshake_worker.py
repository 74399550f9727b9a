"""Worker that answers the handshake with an unsupported protocol version."""

import json
import sys

for line in sys.stdin:
    message = json.loads(line)
    if message["kind"] == "handshake":
        result = {"name": "bad", "protocol": "99"}
        sys.stdout.write(json.dumps({"id": message["id"], "kind": "handshake", "result": result}) + "\n")
        sys.stdout.flush()
