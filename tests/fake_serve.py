"""Stand-in serve executable: `fake_serve.py serve --port N --hostname H [--model M]`."""

import argparse
import json
import sys
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer


class _SessionHandler(BaseHTTPRequestHandler):
    model = None

    def do_GET(self):
        if self.path != "/session":
            self.send_response(404)
            self.end_headers()
            return
        body = json.dumps({"ok": True, "model": self.model}).encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        sys.stderr.write("fake_serve: " + (format % args) + "\n")


def main(argv=None):
    parser = argparse.ArgumentParser()
    parser.add_argument("--startup-delay", type=float, default=0.0)
    sub = parser.add_subparsers(dest="command", required=True)
    serve = sub.add_parser("serve")
    serve.add_argument("--port", type=int, required=True)
    serve.add_argument("--hostname", default="127.0.0.1")
    serve.add_argument("--model", default=None)
    args = parser.parse_args(argv)

    if args.startup_delay:
        time.sleep(args.startup_delay)
    _SessionHandler.model = args.model
    server = ThreadingHTTPServer((args.hostname, args.port), _SessionHandler)
    print(f"fake_serve listening on {args.hostname}:{args.port}", flush=True)
    try:
        server.serve_forever()
    finally:
        server.server_close()


if __name__ == "__main__":
    main()
