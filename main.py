# main.py - command-line entry point
import argparse
import logging
import sys

from errors import InvalidConfig, InvalidUpstream
from proxy_server import start_server
from socks5_config import read_config_file


def build_parser():
    parser = argparse.ArgumentParser(description="SOCKS5 proxy server (CONNECT only) with optional upstream chaining")
    parser.add_argument("--config", help="JSON file with port/user/password and an optional upstream object")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, help="listen port, 0 or absent picks a free one")
    parser.add_argument("--user")
    parser.add_argument("--password")
    parser.add_argument("--upstream-host")
    parser.add_argument("--upstream-port", type=int)
    parser.add_argument("--upstream-user")
    parser.add_argument("--upstream-password")
    parser.add_argument("--log-level", default="INFO")
    return parser


def collect_settings(args):
    """Merge the optional JSON file with command-line overrides into raw dicts."""
    config, upstream = {}, None
    if args.config:
        config, upstream = read_config_file(args.config)

    for key, value in (('port', args.port), ('user', args.user), ('password', args.password)):
        if value is not None:
            config[key] = value

    overrides = {
        'hostProxy': args.upstream_host,
        'portProxy': args.upstream_port,
        'userProxy': args.upstream_user,
        'passwordProxy': args.upstream_password,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if overrides:
        upstream = dict(upstream if isinstance(upstream, dict) else {}, **overrides)
    return config, upstream


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(),
                        format='%(asctime)s - %(levelname)s - %(message)s')

    try:
        config, upstream = collect_settings(args)
        handle = start_server(config, upstream, host=args.host)
    except (InvalidConfig, InvalidUpstream) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2
    except OSError as e:
        print(f"Cannot start server: {e}", file=sys.stderr)
        return 1

    print(f"Proxy server running on port {handle.bound_port}")
    try:
        handle.wait()
    except KeyboardInterrupt:
        print("\nShutting down proxy server...")
    finally:
        handle.close(callback=lambda: print("Proxy server closed."))
    return 0


if __name__ == "__main__":
    sys.exit(main())
