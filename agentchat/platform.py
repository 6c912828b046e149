"""Tools every agent gets regardless of its own configuration."""

from __future__ import annotations

from agentchat.config import Settings
from agentchat.models import ApiTool, ToolServer

GRID_SCHEMA_HINT = """The Grid GraphQL API provides Web3 data. Data coverage:
- Profiles: companies, DAOs, governments, investors, NFT collections, projects
- Products: DEXs, wallets, bridges, oracles, L1/L2 blockchains, DeFi protocols
- Assets: tokens, NFTs, stablecoins, governance tokens
- Socials: Twitter/X, Github, Discord, Telegram, Instagram, LinkedIn, Youtube
- Entities: corporations, foundations, startups

Use introspection or plural query names (e.g. profiles, products, assets) to list collections.
For "what's available", "list", "show me", "find" use appropriate queries with pagination (first: 50).

When presenting results to the user, use markdown: lists for multiple items, tables for structured data (| col | col |), and **bold** for key names."""


def platform_api_tools(settings: Settings) -> list[ApiTool]:
    if not settings.platform_tools_enabled:
        return []
    return [
        ApiTool(
            id="the-grid-platform",
            name="The Grid",
            url=settings.grid_graphql_url.strip(),
            method="POST",
            api_type="graphql",
            description=(
                "Structured Web3 data: profiles, products, assets, socials, entities. "
                "Use for data queries, lists, and lookups."
            ),
            instructions=(
                "Use The Grid when the user asks about Web3 data, profiles, products, assets, companies, DAOs, "
                "protocols, or structured data. Prefer for 'what data is available', 'list', 'find', 'show me'."
            ),
            schema=GRID_SCHEMA_HINT,
            api_key=settings.grid_api_key.strip(),
        )
    ]


def platform_tool_servers(settings: Settings) -> list[ToolServer]:
    url = settings.grid_mcp_server_url.strip()
    if not settings.platform_tools_enabled or not url:
        return []
    return [
        ToolServer(
            id="the-grid-platform-mcp",
            name="The Grid (MCP)",
            url=url,
            description="Data and query tools. Use when users ask about datasets, APIs, subgraphs.",
            instructions=(
                "Use The Grid when the user asks about data, datasets, APIs, subgraphs, or querying structured "
                "information."
            ),
        )
    ]
