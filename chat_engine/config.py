"""Engine configuration — loaded from environment variables / .env file."""

from pydantic_settings import BaseSettings


class EngineSettings(BaseSettings):
    # Model service
    gemini_api_key: str = ""
    gemini_model: str = "gemini-3-flash-preview"
    gemini_api_base: str = "https://generativelanguage.googleapis.com/v1beta/models"
    thinking_level: str = "medium"
    use_mock_model: bool = False

    # Embeddings / vector store
    embedding_provider: str = "gemini"  # "gemini" | "openai"
    embedding_model: str = "gemini-embedding-001"
    openai_api_key: str = ""
    openai_embedding_model: str = "text-embedding-3-small"
    corpus_path: str = ""
    vector_top_k: int = 5

    # Knowledge graph
    neo4j_uri: str = ""
    neo4j_user: str = "neo4j"
    neo4j_password: str = ""
    graph_max_entities: int = 5
    graph_min_token_length: int = 4
    graph_result_limit: int = 50

    # Proxied tools
    mcp_server_url: str = ""
    mcp_excluded_tool: str = "web_search"
    web_search_grounding: bool = False

    # Turn loop
    max_rounds: int = 5
    request_timeout_seconds: float = 120.0

    # Tracing
    trace_dir: str = "./traces"

    # Conversation seed for the in-memory store
    conversations_path: str = ""

    model_config = {"env_file": ".env", "extra": "ignore"}
