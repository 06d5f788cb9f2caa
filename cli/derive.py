#!/usr/bin/env python3
"""Generate one thumbnail or preview into the configured cache.

Usage:
    imagefind-derive <source> [thumbnail|preview] [--force] [-o <output.jpg>]

Prints the cache entry path. With -o the JPEG is also written to <output.jpg>.
"""

import logging
import sys

from config.config_manager import ConfigManager
from core.cache_store import CacheStore, DerivativeTier, derive_key
from core.derivative_generator import DerivativeGenerator, normalize_source_path
from plugins.exiftool_process import shutdown_all
from plugins.plugin_loader import load_plugins

USAGE = "Usage: imagefind-derive <source> [thumbnail|preview] [--force] [-o <output.jpg>]"


def parse_args(argv: list[str]) -> tuple[str, DerivativeTier, bool, str | None]:
    args = list(argv)
    force = "--force" in args
    if force:
        args.remove("--force")
    output = None
    if "-o" in args:
        idx = args.index("-o")
        if idx + 1 >= len(args):
            raise ValueError("-o needs an output path")
        output = args[idx + 1]
        del args[idx:idx + 2]
    if not args or len(args) > 2:
        raise ValueError("expected a source path and an optional tier")
    tier_name = args[1] if len(args) == 2 else "thumbnail"
    try:
        tier = DerivativeTier[tier_name.upper()]
    except KeyError:
        raise ValueError(f"unknown tier '{tier_name}'") from None
    return args[0], tier, force, output


def main():
    try:
        source, tier, force, output = parse_args(sys.argv[1:])
    except ValueError as e:
        print(f"{e}\n{USAGE}", file=sys.stderr)
        sys.exit(2)

    config_manager = ConfigManager()
    logging.basicConfig(level=getattr(logging, config_manager.logging_level.upper(), logging.INFO),
                        format='%(asctime)s [%(levelname)s] %(message)s')

    store = CacheStore(config_manager.get_path("cache.thumbnail_dir"),
                       config_manager.get_path("cache.preview_dir"))
    generator = DerivativeGenerator(
        store, load_plugins(use_exiftool=bool(config_manager.get("tools.exiftool", True))))
    try:
        data = generator.generate(source, tier, force=force)
    finally:
        shutdown_all()

    if data is None:
        print(f"No {tier.label} could be generated for {source}", file=sys.stderr)
        sys.exit(1)

    print(store.entry_path(tier, derive_key(normalize_source_path(source))))
    if output:
        with open(output, "wb") as f:
            f.write(data)
        print(f"Wrote {len(data)} bytes to {output}")


if __name__ == "__main__":
    main()
