"""Run the imagefind daemon in the foreground.

Usage:
    imagefind-daemon [--restart] [config.yaml]

--restart stops an already running daemon first.
"""

import logging
import os
import sys


def main():
    args = sys.argv[1:]
    restart = "--restart" in args
    args = [a for a in args if a != "--restart"]
    if len(args) > 1 or any(a.startswith("-") for a in args):
        print(__doc__.strip(), file=sys.stderr)
        sys.exit(2)
    config_path = args[0] if args else None
    if config_path and not os.path.isfile(config_path):
        print(f"Config file not found: {config_path}", file=sys.stderr)
        sys.exit(2)

    if restart:
        logging.basicConfig(level=logging.INFO, format='%(asctime)s [%(levelname)s] %(message)s')
        from cli.stop import stop_daemon
        from config.config_manager import ConfigManager
        if not stop_daemon(config_manager=ConfigManager(config_path)):
            logging.error("Could not stop existing daemon; aborting restart.")
            sys.exit(1)

    from imagefind_daemon import main as _daemon_main
    _daemon_main(config_path)


if __name__ == "__main__":
    main()
