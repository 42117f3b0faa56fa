"""Remote browser sessions streamed over a WebSocket."""
