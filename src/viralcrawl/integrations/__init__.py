"""
viralcrawl Integrations - remote fetch port and its implementations.

- remote: the port protocol and the remote error taxonomy
- callback_adapter: wraps a callback-style game coordinator client
- replay_source: serves recorded payloads from disk
"""
