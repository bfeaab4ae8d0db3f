"""
Noisy stub of the filesystem tool server.

Prints a banner and diagnostic chatter on stdout next to pretty-printed
JSON-RPC replies, the way the real server's output looks. The allowed
directory argument is accepted and ignored. The ``hang`` method is never
answered.
"""

import json
import sys
import time


def write(text):
    sys.stdout.write(text)
    sys.stdout.flush()


def main():
    write("Secure MCP Filesystem Server running on stdio\n")
    write(f"Allowed directories: {sys.argv[1:]}\n")
    while True:
        raw = sys.stdin.readline()
        if not raw:
            break
        raw = raw.strip()
        if not raw:
            continue
        request = json.loads(raw)
        method = request.get("method")
        if method == "hang":
            write(f"holding {request.get('id')}...\n")
            continue
        reply = {
            "jsonrpc": "2.0",
            "id": request.get("id"),
            "result": {"method": method, "params": request.get("params"), "note": "braces } { inside"},
        }
        if method == "fail":
            reply = {"jsonrpc": "2.0", "id": request.get("id"), "error": {"message": "filesystem failure"}}

        body = json.dumps(reply, indent=2)
        write(f"processing {method}...\n")
        if method == "split":
            half = len(body) // 2
            write(body[:half])
            time.sleep(0.05)
            write(body[half:] + "\ndone\n")
        else:
            write(body + "\n")


if __name__ == "__main__":
    main()
