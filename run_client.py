# run_client.py
import argparse
import logging
import os

from transfer_client.client import Client
from transfer_common.config import ClientConfig
from transfer_common.congestion import Algorithm
from transfer_common.errors import ConfigurationError
from transfer_common.protocol import DOWNLOAD_DIR, HOST, PORT


def cmd_list(client, args):
    ok, msg = client.request_list_files()
    if not ok:
        print(msg)
        return 1
    event = client.events.wait_for(lambda e: e['type'] in ('file_list', 'transfer_failed'), args.timeout)
    if event is None or event['type'] != 'file_list':
        print(f"List error: {event['reason'] if event else 'timed out'}")
        return 1
    if not event['files']:
        print("No files available.")
    for name, size in event['files']:
        print(f"{name}\t{size}")
    return 0


def _run_transfer(client, ok, msg, filename, timeout):
    print(msg)
    if not ok:
        return 1
    event = client.wait_for_transfer(filename, timeout)
    if event is None:
        print(f"Timed out waiting for '{filename}'.")
        return 1
    if event['type'] == 'transfer_failed':
        print(f"Failed: {event['reason']}")
        return 1
    print(f"Done: {filename} ({event.get('size', 0)} bytes) {event.get('path', '')}".rstrip())
    return 0


def cmd_download(client, args):
    ok, msg = client.request_download_file(args.filename)
    return _run_transfer(client, ok, msg, args.filename, args.timeout)


def cmd_upload(client, args):
    ok, msg = client.request_upload_file(args.path)
    return _run_transfer(client, ok, msg, os.path.basename(args.path), args.timeout)


def main(argv=None):
    p = argparse.ArgumentParser(prog="run_client", description="File transfer client with simulated congestion control.")
    p.add_argument("--host", default=HOST)
    p.add_argument("--port", type=int, default=PORT)
    p.add_argument("--download-dir", default=DOWNLOAD_DIR)
    p.add_argument("--algorithm", choices=[a.value for a in Algorithm], default=Algorithm.RENO.value)
    p.add_argument("--loss-rate", type=float, default=0.0)
    p.add_argument("--timeout", type=float, default=300.0)
    p.add_argument("-v", "--verbose", action="store_true")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("list").set_defaults(func=cmd_list)
    download = sub.add_parser("download")
    download.add_argument("filename")
    download.set_defaults(func=cmd_download)
    upload = sub.add_parser("upload")
    upload.add_argument("path")
    upload.set_defaults(func=cmd_upload)

    args = p.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        client = Client(ClientConfig(
            host=args.host,
            port=args.port,
            storage_dir=args.download_dir,
            algorithm=args.algorithm,
            loss_rate=args.loss_rate,
        ))
    except ConfigurationError as e:
        print(f"[ERROR] {e}")
        return 2

    connected, msg = client.connect()
    print(msg)
    if not connected:
        return 1
    try:
        client.switch_algorithm(args.algorithm)
        return int(args.func(client, args))
    except KeyboardInterrupt:
        return 130
    finally:
        print(client.disconnect())


if __name__ == "__main__":
    raise SystemExit(main())
