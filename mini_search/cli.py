"""Command-line interface: crawl, search and serve."""

import json
import logging
import sys

import click

from . import __version__
from .config import ServerConfig
from .engine.config import PRECISIONS, SearchConfig
from .engine.embeddings import SentenceTransformerEmbedder
from .engine.exceptions import IndexNotFoundError, MiniSearchError
from .engine.index import SearchIndex
from .engine.pipeline import IndexingPipeline, install_signal_handlers
from .engine.query import QueryEngine
from .server import SearchServer, configure_logging

logger = logging.getLogger(__name__)


def load_query_engine(search_config: SearchConfig, lexical_only: bool = False) -> QueryEngine:
    """Build a QueryEngine, falling back to lexical ranking if the model cannot be loaded."""
    embedder = None
    if not lexical_only:
        try:
            embedder = SentenceTransformerEmbedder.from_config(search_config)
        except (OSError, ValueError) as e:
            logger.warning(f"[SEARCH] Could not load encoder ({e}), using lexical ranking only")
    return QueryEngine(SearchIndex.from_config(search_config), embedder, search_config)


@click.group()
@click.version_option(__version__, prog_name="mini-search")
@click.option("--env-prefix", default="", help="Prefix for environment variables (e.g. MINI_SEARCH_).")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx, env_prefix, verbose):
    """Self-hosted hybrid search: crawl sites, then search them."""
    config = ServerConfig.from_env(env_prefix)
    if verbose:
        config.LOG_LEVEL = "DEBUG"
    configure_logging(config)
    ctx.obj = config


@cli.command()
@click.argument("seeds", nargs=-1, required=True)
@click.option("--budget", type=click.IntRange(min=0), default=None, help="Maximum pages per seed.")
@click.option("--workers", type=click.IntRange(min=1), default=None, help="Number of crawl threads.")
@click.option("--prefix", "base_path", default=None, help="Preferred path prefix (default: seed directory).")
@click.option("--append", is_flag=True, help="Add to the existing index instead of replacing it.")
@click.option("--index-dir", type=click.Path(file_okay=False), default=None, help="Index directory.")
@click.option("--model-dir", type=click.Path(file_okay=False), default=None, help="Sentence encoder directory.")
@click.option("--precision", type=click.Choice(PRECISIONS), default=None, help="Encoder weight precision.")
@click.option("--include", "include_patterns", multiple=True, help="Only crawl URLs matching this regex.")
@click.option("--exclude", "exclude_patterns", multiple=True, help="Skip URLs matching this regex.")
@click.option("--no-progress", is_flag=True, help="Disable progress bars.")
@click.pass_obj
def crawl(
    config,
    seeds,
    budget,
    workers,
    base_path,
    append,
    index_dir,
    model_dir,
    precision,
    include_patterns,
    exclude_patterns,
    no_progress,
):
    """Crawl SEEDS and build the search index.

    Every seed gets its own page budget; all of them end up in one index.
    """
    search_config = config.search_config(
        index_dir=index_dir,
        model_dir=model_dir,
        precision=precision,
        base_path=base_path,
        url_include_patterns=list(include_patterns) or None,
        url_exclude_patterns=list(exclude_patterns) or None,
        show_progress=False if no_progress else None,
    )
    pipeline = IndexingPipeline(search_config)
    restore_signals = install_signal_handlers(pipeline)
    try:
        report = pipeline.run(list(seeds), budget=budget, worker_count=workers, append=append)
    except (MiniSearchError, OSError) as e:
        raise click.ClickException(str(e)) from e
    finally:
        restore_signals()

    click.echo(report.summary())
    if report.aborted:
        sys.exit(130)


@cli.command()
@click.argument("query")
@click.option("-k", "top_k", type=click.IntRange(min=1), default=None, help="Number of results.")
@click.option("--json", "as_json", is_flag=True, help="Print results as JSON.")
@click.option("--lexical-only", is_flag=True, help="Skip the sentence encoder and rank by BM25 only.")
@click.option("--index-dir", type=click.Path(file_okay=False), default=None, help="Index directory.")
@click.option("--model-dir", type=click.Path(file_okay=False), default=None, help="Sentence encoder directory.")
@click.pass_obj
def search(config, query, top_k, as_json, lexical_only, index_dir, model_dir):
    """Search the index for QUERY."""
    search_config = config.search_config(index_dir=index_dir, model_dir=model_dir)
    engine = load_query_engine(search_config, lexical_only=lexical_only)
    try:
        results = engine.search(query, top_k)
    except IndexNotFoundError as e:
        raise click.ClickException(str(e)) from e

    if as_json:
        click.echo(json.dumps({"query": query, "results": [r.to_dict() for r in results]}, indent=2))
        return

    if not results:
        click.echo(f"No results found for '{query}'.")
        return
    for i, result in enumerate(results, 1):
        click.echo(click.style(f"{i}. {result.title or result.url}", bold=True) + f"  ({result.score:.3f})")
        click.echo(f"   {result.url}")
        if result.snippet:
            click.echo(f"   {result.snippet}")
        click.echo()


@cli.command()
@click.option("--host", default=None, help="Host to bind to.")
@click.option("--port", type=int, default=None, help="Port to listen on.")
@click.option("--lexical-only", is_flag=True, help="Skip the sentence encoder and rank by BM25 only.")
@click.option("--index-dir", type=click.Path(file_okay=False), default=None, help="Index directory.")
@click.option("--model-dir", type=click.Path(file_okay=False), default=None, help="Sentence encoder directory.")
@click.option("--debug", is_flag=True, help="Run Flask in debug mode.")
@click.pass_obj
def serve(config, host, port, lexical_only, index_dir, model_dir, debug):
    """Serve the JSON search API."""
    search_config = config.search_config(index_dir=index_dir, model_dir=model_dir)
    engine = load_query_engine(search_config, lexical_only=lexical_only)
    SearchServer(engine, config).run(port=port, host=host, debug=debug)


def main():
    cli(prog_name="mini-search")


if __name__ == "__main__":
    main()
