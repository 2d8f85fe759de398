"""Meta Ads MCP server: JSON-RPC tools over the Meta Graph API."""

APP_NAME = "meta-ads-mcp"
APP_VER = "0.1.0"
