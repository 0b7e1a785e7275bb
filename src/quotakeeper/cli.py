import argparse
import logging
import sys

from quotakeeper._logging import get_logger

logger = get_logger("QuotaKeeper.CLI")


def _print_stats(facade, config, provider: str) -> None:
    stats = facade.get_usage_stats(provider, config.get_provider_limits(provider))
    key_index = facade.rotation.current_index(provider)
    key_count = len(facade.rotation.keys(provider))
    keys = f"key {key_index + 1}/{key_count}" if key_index is not None else "no keys"

    if stats is None:
        print(f"{provider}: no usage recorded ({keys})")
        return

    print(f"{provider} ({keys}):")
    for window in ("hourly", "daily", "monthly"):
        usage = getattr(stats, f"{window}_usage")
        limit = getattr(stats, f"{window}_limit")
        util = getattr(stats, f"{window}_utilization")
        if limit:
            print(f"  {window:<8} {usage:>12,} / {limit:,}  ({util * 100:.1f}%)")
        else:
            print(f"  {window:<8} {usage:>12,}  (no limit)")


def main(argv=None) -> None:
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    parser = argparse.ArgumentParser(
        description="QuotaKeeper token usage and API key rotation"
    )
    parser.add_argument(
        "--config",
        help="Path to quotaconfig.yaml. Falls back to QUOTAKEEPER_CONFIG env var, "
        "then ~/.quotakeeper/quotaconfig.yaml.",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable INFO logging."
    )

    subparsers = parser.add_subparsers(dest="command")

    st = subparsers.add_parser("stats", help="Show windowed usage per provider.")
    st.add_argument("provider", nargs="?", help="Provider (default: all configured)")

    rec = subparsers.add_parser("record", help="Record token usage for a provider.")
    rec.add_argument("provider")
    rec.add_argument("tokens", type=int)

    sr = subparsers.add_parser(
        "should-rotate", help="Check whether a provider should rotate keys."
    )
    sr.add_argument("provider")

    rot = subparsers.add_parser("rotate", help="Advance a provider to its next key.")
    rot.add_argument("provider")

    rs = subparsers.add_parser("reset", help="Clear usage history for a provider.")
    rs.add_argument("provider")

    subparsers.add_parser("clear", help="Clear usage history for every provider.")
    subparsers.add_parser("sweep", help="Prune entries past the retention horizon.")

    est = subparsers.add_parser("estimate", help="Estimate tokens for some text.")
    est.add_argument("text")

    # --- config editing subcommands ---
    ak = subparsers.add_parser("add-key", help="Append an API key to a provider.")
    ak.add_argument("provider")
    ak.add_argument("key")

    sl = subparsers.add_parser(
        "set-limits", help="Set token limit overrides for a provider."
    )
    sl.add_argument("provider")
    sl.add_argument("--tokens-per-hour", type=int, default=None)
    sl.add_argument("--tokens-per-day", type=int, default=None)
    sl.add_argument(
        "--max-tokens-total", type=int, default=None, help="30-day token limit"
    )
    sl.add_argument(
        "--threshold",
        type=float,
        default=None,
        help="Utilization in (0, 1] at which rotation is recommended",
    )

    rp = subparsers.add_parser(
        "remove-provider", help="Remove a provider from the config."
    )
    rp.add_argument("provider")

    subparsers.add_parser("show-config", help="Print the current config as YAML.")

    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.INFO)

    if args.command is None:
        parser.print_help()
        return

    # ---- estimate (no config needed) ----
    if args.command == "estimate":
        from quotakeeper.facade import estimate_tokens

        print(estimate_tokens(args.text))
        return

    from quotakeeper.config import ConfigLoader
    from quotakeeper.facade import QuotaFacade

    try:
        config = ConfigLoader(config_path=args.config)
    except FileNotFoundError:
        print(
            "No configuration file found.\n"
            "Create ~/.quotakeeper/quotaconfig.yaml or pass --config."
        )
        sys.exit(1)

    # ---- config editing (no quota state needed) ----
    if args.command == "show-config":
        print(config.to_yaml(), end="")
        return

    if args.command == "set-limits":
        from quotakeeper.errors import InvalidInput

        section = config.get_provider_config(args.provider)
        overrides = dict(section.get("limits") or {})
        for field, value in (
            ("tokens_per_hour", args.tokens_per_hour),
            ("tokens_per_day", args.tokens_per_day),
            ("max_tokens_total", args.max_tokens_total),
            ("proactive_threshold", args.threshold),
        ):
            if value is not None:
                overrides[field] = value
        try:
            config.set_provider_limits(args.provider, overrides)
        except InvalidInput as exc:
            print(f"Invalid limits for {args.provider}: {exc}")
            sys.exit(1)
        path = config.save()
        print(f"Limits for {args.provider} saved to {path}")
        return

    facade = QuotaFacade.from_config(config)

    if args.command == "add-key":
        if not facade.add_key(args.provider, args.key):
            print(f"Invalid API key for {args.provider}")
            sys.exit(1)
        config.set_api_keys(args.provider, facade.rotation.keys(args.provider))
        config.save()
        count = len(facade.rotation.keys(args.provider))
        print(f"{args.provider}: {count} API key(s) configured")
        return

    if args.command == "remove-provider":
        if not config.remove_provider(args.provider):
            print(f"Provider not found in config: {args.provider}")
            sys.exit(1)
        config.save()
        facade.rotation.remove_provider(args.provider)
        print(f"Removed provider: {args.provider}")
        return

    if args.command == "stats":
        providers = [args.provider] if args.provider else sorted(
            set(config.get_provider_ids()) | set(facade.ledger.providers())
        )
        if not providers:
            print("No providers configured.")
            return
        for provider in providers:
            _print_stats(facade, config, provider)
        return

    if args.command == "record":
        facade.record_usage(args.provider, args.tokens)
        print(f"Recorded {args.tokens} tokens for {args.provider}")
        return

    if args.command == "should-rotate":
        limits = config.get_provider_limits(args.provider)
        decision = facade.should_rotate_proactively(args.provider, limits)
        print("yes" if decision else "no")
        sys.exit(0 if decision else 2)

    if args.command == "rotate":
        if facade.rotate_to_next_key(args.provider):
            index = facade.rotation.current_index(args.provider)
            print(f"{args.provider}: now using key {index + 1}")
        else:
            print(f"{args.provider}: no more API keys available")
            sys.exit(1)
        return

    if args.command == "reset":
        facade.reset_usage(args.provider)
        print(f"Usage history cleared for {args.provider}")
        return

    if args.command == "clear":
        facade.clear_all_usage()
        print("Usage history cleared for all providers")
        return

    if args.command == "sweep":
        removed = facade.sweep()
        print(f"Removed {removed} expired entries")
        return
