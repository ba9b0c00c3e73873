# run_server.py
import argparse
import logging

from transfer_common.config import ServerConfig
from transfer_common.congestion import Algorithm
from transfer_common.errors import ConfigurationError
from transfer_common.protocol import IDLE_TIMEOUT, PORT, UPLOAD_DIR
from transfer_server.server import Server


def build_parser():
    p = argparse.ArgumentParser(prog="run_server", description="File transfer server with simulated congestion control.")
    p.add_argument("--host", default="0.0.0.0")
    p.add_argument("--port", type=int, default=PORT)
    p.add_argument("--upload-dir", default=UPLOAD_DIR)
    p.add_argument("--algorithm", choices=[a.value for a in Algorithm], default=Algorithm.RENO.value)
    p.add_argument("--idle-timeout", type=float, default=IDLE_TIMEOUT)
    p.add_argument("--loss-rate", type=float, default=0.0)
    p.add_argument("-v", "--verbose", action="store_true")
    return p


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        server = Server(ServerConfig(
            host=args.host,
            port=args.port,
            storage_dir=args.upload_dir,
            algorithm=args.algorithm,
            idle_timeout=args.idle_timeout,
            loss_rate=args.loss_rate,
        ))
    except ConfigurationError as e:
        print(f"[ERROR] {e}")
        return 2

    try:
        server.serve_forever()
    except OSError as e:
        print(f"[ERROR] Could not start server: {e}")
        return 1
    except KeyboardInterrupt:
        print("\n[SHUTTING DOWN] Server is shutting down.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
