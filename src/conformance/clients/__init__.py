"""Protocol test clients: agent-task (A2A), tool invocation (MCP), x402 payments."""
