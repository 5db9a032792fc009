"""Example: Index a documentation site and search it from Python.

Crawls up to a few hundred pages of a documentation site into a local index,
then runs some queries through the hybrid query engine and through the
LangChain tool that an agent would use.

Usage:
    python examples/search_docs.py https://doc.rust-lang.org/stable/book/ --budget 200

The sentence encoder is read from ./model (see MODEL_DIR in your .env).
"""

import argparse
import logging

from mini_search import IndexingPipeline, QueryEngine, SearchIndex, ServerConfig, create_search_tool
from mini_search.engine import SentenceTransformerEmbedder, install_signal_handlers
from mini_search.server import configure_logging

logger = logging.getLogger("mini_search.examples")

EXAMPLE_QUERIES = [
    "install rust",
    "how do I share data between threads",
    "error handling with Result",
]


def build_index(config: ServerConfig, seed: str, budget: int) -> SentenceTransformerEmbedder:
    """Crawl ``seed`` into a fresh index and return the loaded encoder for reuse."""
    search_config = config.search_config()
    embedder = SentenceTransformerEmbedder.from_config(search_config)
    pipeline = IndexingPipeline(search_config, embedder=embedder)

    restore = install_signal_handlers(pipeline)
    try:
        report = pipeline.run(seed, budget=budget)
    finally:
        restore()

    print(report.summary())
    return embedder


def run_queries(config: ServerConfig, embedder: SentenceTransformerEmbedder):
    """Search with the query engine directly, then through the agent tool."""
    search_config = config.search_config()
    engine = QueryEngine(SearchIndex.from_config(search_config), embedder, search_config)

    for query in EXAMPLE_QUERIES:
        print(f"\n=== {query} ===")
        for result in engine.search(query, k=3):
            print(f"{result.score:.3f}  {result.title or result.url}")
            print(f"       {result.url}")
            print(f"       {result.snippet}")

    # Same engine, wrapped for an LLM agent
    tool = create_search_tool(engine)
    print(f"\n=== tool: {tool.name} ===")
    print(tool.invoke({"query": EXAMPLE_QUERIES[0], "k": 2}))


def main():
    parser = argparse.ArgumentParser(description="Index a documentation site and search it")
    parser.add_argument("seed", help="Seed URL, e.g. https://doc.rust-lang.org/stable/book/")
    parser.add_argument("--budget", type=int, default=200, help="Maximum pages to crawl")
    args = parser.parse_args()

    config = ServerConfig.from_env()
    configure_logging(config)

    embedder = build_index(config, args.seed, args.budget)
    run_queries(config, embedder)


if __name__ == "__main__":
    main()
