"""LangChain tool wrapping the search engine.

Lets an LLM agent query the local index the same way a person uses the
search API.
"""

from langchain_core.tools import StructuredTool
from pydantic import BaseModel, Field

from .engine.exceptions import IndexNotFoundError
from .engine.query import QueryEngine


class SearchInput(BaseModel):
    """Input schema for the search tool."""

    query: str = Field(description="Natural-language search query (e.g., 'install rust toolchain')")
    k: int = Field(default=5, description="Maximum number of results to return. Default is 5.")


def format_results(query: str, results) -> str:
    """Render search results as plain text for a language model."""
    if not results:
        return f"No results found for '{query}'."

    lines = [f"Search results for '{query}':", ""]
    for i, result in enumerate(results, 1):
        lines.append(f"{i}. {result.title or result.url}")
        lines.append(f"   URL: {result.url}")
        if result.snippet:
            lines.append(f"   {result.snippet}")
        lines.append("")
    return "\n".join(lines).rstrip()


def create_search_tool(engine: QueryEngine, name: str = "search_index", max_results: int = 20) -> StructuredTool:
    """Create a search tool backed by the given query engine.

    Args:
        engine: QueryEngine to search with
        name: Tool name shown to the model
        max_results: Upper bound on ``k``, whatever the model asks for

    Returns:
        LangChain tool for searching the local index

    Example:
        >>> engine = QueryEngine(SearchIndex("./mini-search-index"), embedder)
        >>> tools = [create_search_tool(engine)]
    """

    def _search(query: str, k: int = 5) -> str:
        k = max(1, min(k, max_results))
        try:
            results = engine.search(query, k)
        except IndexNotFoundError:
            return "The search index has not been built yet."
        return format_results(query, results)

    return StructuredTool.from_function(
        func=_search,
        name=name,
        description="Search the locally indexed web pages. Combines keyword and semantic matching, so both exact terms and paraphrased questions work. Returns titles, URLs, and text snippets of the most relevant pages.",
        args_schema=SearchInput,
    )
