"""Network adapters: the chat REST API client and the STOMP transport."""
