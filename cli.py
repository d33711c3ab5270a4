import argparse
import sys
from typing import Optional

from rich.console import Console
from rich.table import Table

from personalization.clustering import regenerate_topic_clusters
from personalization.config import get_settings
from personalization.context import ServiceContext, build_context
from personalization.errors import ConfigurationError, StorageError
from personalization.etl import evaluate_etl_run, run_insight_etl
from personalization.feed import get_personalized_feed
from personalization.insights import get_creator_insight_snapshot
from personalization.logging_config import configure_logging
from personalization.models import EtlOptions, EtlResult, PersonalizedFeedOptions

console = Console()


def _print_result(title: str, result: EtlResult) -> None:
    table = Table(title=title, show_header=False)
    for key, value in result.to_dict().items():
        table.add_row(key, str(value))
    console.print(table)


def cmd_etl(args, context: ServiceContext) -> int:
    """Full ETL run; non-zero exit when any item failed."""
    result = run_insight_etl(
        context,
        EtlOptions(
            refresh_affinities=not args.skip_affinities,
            skip_audit_log=args.skip_audit,
            refresh_clusters=not args.skip_clusters,
        ),
    )
    _print_result("Insight ETL", result)
    if result.errors:
        console.print(f"[red]ETL finished with {result.errors} error(s).[/]")
        return 1
    return 0


def cmd_profile_rebuild(args, context: ServiceContext) -> int:
    result = run_insight_etl(
        context,
        EtlOptions(refresh_affinities=True, skip_audit_log=True, refresh_clusters=False),
    )
    _print_result("Profile rebuild", result)
    return 1 if result.errors else 0


def cmd_insights_refresh(args, context: ServiceContext) -> int:
    """ETL followed by the run policy check and the top creator insights."""
    result = run_insight_etl(context, EtlOptions())
    _print_result("Insight refresh", result)

    violations = evaluate_etl_run(result, context.settings)
    for violation in violations:
        console.print(f"[red]Policy violation:[/] {violation}")

    snapshot = get_creator_insight_snapshot(context, args.top)
    table = Table(title=f"Creator insights ({snapshot.model})")
    table.add_column("Post")
    table.add_column("CTR", justify="right")
    table.add_column("Dwell", justify="right")
    table.add_column("Engagement", justify="right")
    table.add_column("Drivers")
    for post in snapshot.posts:
        table.add_row(
            post.title,
            f"{post.predicted_ctr:.3f}",
            f"{post.predicted_dwell_seconds}s",
            f"{post.predicted_engagement_probability:.2f}",
            ", ".join(post.top_drivers),
        )
    console.print(table)
    return 1 if violations else 0


def cmd_cluster(args, context: ServiceContext) -> int:
    result = regenerate_topic_clusters(context)
    console.print(
        f"[green]Regenerated {result.clusters} cluster(s) covering {result.assignments} post(s).[/]"
    )
    for cluster in context.clusters.list_clusters():
        console.print(
            f"  [bold]{cluster.label}[/] [dim]({len(cluster.members)} posts)[/] "
            f"{', '.join(cluster.keywords)}"
        )
    return 0


def cmd_feed_simulate(args, context: ServiceContext) -> int:
    feed = get_personalized_feed(
        context,
        PersonalizedFeedOptions(
            user_id=args.user,
            limit=args.limit,
            context_post_id=args.context,
            force_refresh=True,
        ),
    )
    console.print(
        f"segment=[bold]{feed.segment or '-'}[/] cache={feed.cache} "
        f"fallback={feed.fallback} latency={feed.latency_ms}ms"
    )
    for item in feed.items:
        score_color = "green" if item.score > 0.6 else "yellow" if item.score > 0.4 else "white"
        console.print(f"[{score_color}]{item.score:.2f}[/{score_color}] [bold]{item.title}[/bold]")
        console.print(f"   [dim italic]{'; '.join(item.reason)}[/]")
    return 0


def cmd_serve(args, context: ServiceContext) -> int:
    import uvicorn

    from personalization.main import create_app

    uvicorn.run(create_app(context), host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reader personalization batch tools")
    parser.add_argument("--data-dir", help="Override the personalization data directory")
    parser.add_argument("--seed", type=int, default=None, help="Seed for cluster initialization")
    sub = parser.add_subparsers(dest="command", required=True)

    etl = sub.add_parser("etl", help="Run the full insight ETL")
    etl.add_argument("--skip-affinities", action="store_true")
    etl.add_argument("--skip-audit", action="store_true")
    etl.add_argument("--skip-clusters", action="store_true")
    etl.set_defaults(func=cmd_etl)

    rebuild = sub.add_parser("profile-rebuild", help="Rebuild profiles and affinities")
    rebuild.set_defaults(func=cmd_profile_rebuild)

    refresh = sub.add_parser("insights-refresh", help="ETL plus policy check and creator insights")
    refresh.add_argument("--top", type=int, default=10, help="Creator insights to show (default: 10)")
    refresh.set_defaults(func=cmd_insights_refresh)

    cluster = sub.add_parser("cluster", help="Regenerate topic clusters")
    cluster.set_defaults(func=cmd_cluster)

    simulate = sub.add_parser("feed-simulate", help="Assemble one feed with a forced refresh")
    simulate.add_argument("--user", default=None, help="Reader id (omit for anonymous)")
    simulate.add_argument("--limit", type=int, default=8)
    simulate.add_argument("--context", default=None, help="Context post id")
    simulate.set_defaults(func=cmd_feed_simulate)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.set_defaults(func=cmd_serve)
    return parser


def main(argv: Optional[list[str]] = None, context: Optional[ServiceContext] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        if context is None:
            overrides = {"data_dir": args.data_dir} if args.data_dir else None
            settings = get_settings(overrides)
            configure_logging(settings.log_level)
            context = build_context(settings, seed=args.seed)
        return args.func(args, context)
    except (StorageError, ConfigurationError) as e:
        console.print(f"[red]Error: {e}[/]")
        return 2


if __name__ == "__main__":
    sys.exit(main())
