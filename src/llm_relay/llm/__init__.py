"""Provider-facing layer: SSE decoding, stream adapters, provider clients."""
