"""LangChain tool exposing site search to LLM agents."""

import logging

from langchain_core.tools import StructuredTool
from pydantic import BaseModel, Field

from .errors import SiteScribeError
from .search import SearchEngine

logger = logging.getLogger(__name__)


class SiteSearchInput(BaseModel):
    """Input schema for the site search tool."""

    query: str = Field(description="What to look for on the site (e.g., 'how do I configure caching')")
    max_results: int = Field(default=5, ge=1, le=20, description="Maximum number of pages to return. Default is 5.")
    path_prefix: str = Field(default="", description="Optional URL path to restrict results to (e.g., '/docs')")


def format_results(response: dict) -> str:
    """Render a search response as plain text for an LLM."""
    results = response.get("results", [])
    if not results:
        return f"No results found for '{response.get('q', '')}'."

    lines = [f"Found {len(results)} results for '{response['q']}':", ""]
    for i, result in enumerate(results, 1):
        heading = result["title"]
        if result.get("section_title"):
            heading = f"{heading} > {result['section_title']}"
        lines.append(f"{i}. {heading}")
        lines.append(f"   URL: {result['url']}")
        lines.append(f"   {result['snippet']}")
        lines.append("")

    return "\n".join(lines).rstrip()


def create_site_search_tool(engine: SearchEngine, name: str = "site_search") -> StructuredTool:
    """Create a site search tool backed by a SearchEngine.

    Args:
        engine: Search engine to query
        name: Tool name shown to the model

    Returns:
        LangChain tool returning a text list of matching pages

    Example:
        >>> from sitescribe import SearchEngine, SiteScribeConfig, create_site_search_tool
        >>> engine = SearchEngine.from_config(SiteScribeConfig.from_env())
        >>> tools = [create_site_search_tool(engine)]
    """

    def _site_search(query: str, max_results: int = 5, path_prefix: str = "") -> str:
        request = {"q": query, "top_k": max_results}
        if path_prefix:
            request["path_prefix"] = path_prefix
        try:
            return format_results(engine.search(request))
        except SiteScribeError as e:
            logger.warning(f"[SEARCH] Tool search failed: {e.code}: {e.message}")
            return f"Error: {e.message}"

    return StructuredTool.from_function(
        func=_site_search,
        name=name,
        description=(
            "Search this site's documentation and pages. Use this to find where a topic is covered. "
            "Returns page titles, URLs and short snippets, best match first."
        ),
        args_schema=SiteSearchInput,
    )
