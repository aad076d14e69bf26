"""
Shared Environment Variable Constants
======================================

Environment variables that configure the agent CLIs themselves (API keys,
alternative endpoints, model overrides). They are forwarded to every
spawned agent process; blank values are dropped before spawning.
"""

API_ENV_VARS: list[str] = [
    # Claude Code
    "ANTHROPIC_API_KEY",
    "ANTHROPIC_BASE_URL",              # Custom API endpoint
    "ANTHROPIC_AUTH_TOKEN",
    "API_TIMEOUT_MS",                  # Request timeout in milliseconds
    "ANTHROPIC_DEFAULT_SONNET_MODEL",
    "ANTHROPIC_DEFAULT_OPUS_MODEL",
    "ANTHROPIC_DEFAULT_HAIKU_MODEL",
    "CLAUDE_CODE_USE_VERTEX",          # Vertex AI mode (set to "1")
    "CLOUD_ML_REGION",
    "ANTHROPIC_VERTEX_PROJECT_ID",
    # Codex
    "OPENAI_API_KEY",
    "OPENAI_BASE_URL",
    "CODEX_HOME",
    # Gemini CLI
    "GEMINI_API_KEY",
    "GOOGLE_API_KEY",
    "GOOGLE_CLOUD_PROJECT",
    "GOOGLE_GENAI_USE_VERTEXAI",
]
