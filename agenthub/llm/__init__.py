"""LLM access package.

Architectural role:
    Provides the provider endpoint map, request-payload construction, and the
    transport client the generation dispatcher uses to reach the upstream model.

Module split:
    - `provider_config`: provider endpoints and API key lookup.
    - `service`: agent + messages -> chat-completions payload.
    - `client`: HTTP transport, response parsing, sanitized `UpstreamError`s.
"""
