import argparse

from limitwatch.config import Config
from limitwatch.scheduler import RefreshInterval


def parse_args(argv: "list[str] | None" = None) -> "Config":
    parser = argparse.ArgumentParser(
        prog="limitwatch",
        description="Multi-provider AI quota tracker",
    )
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        default=":9186",
        help="Address to serve metrics on, empty to disable (default: :9186)",
    )
    parser.add_argument(
        "--refresh.interval",
        dest="refresh_interval",
        default=RefreshInterval.FIVE_MINUTES.value,
        choices=[interval.value for interval in RefreshInterval],
        help="Background refresh interval (default: 5m)",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--provider.enable",
        dest="enabled_providers",
        action="append",
        default=None,
        metavar="PROVIDER",
        help="Enable a provider by id, repeatable (default: LIMITWATCH_ENABLED_PROVIDERS)",
    )
    parser.add_argument(
        "--data.dir",
        dest="data_dir",
        default=None,
        help="Directory holding the usage cache (default: LIMITWATCH_DATA_DIR)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Refresh enabled providers once, print the cache as JSON and exit",
    )

    args = parser.parse_args(argv)
    config = Config.from_env()
    config.listen_address = args.listen_address
    config.refresh_interval = args.refresh_interval
    config.log_level = args.log_level
    config.once = args.once
    if args.enabled_providers is not None:
        config.enabled_providers = [p.strip().lower() for p in args.enabled_providers]
    if args.data_dir is not None:
        config.data_dir = args.data_dir
    return config
