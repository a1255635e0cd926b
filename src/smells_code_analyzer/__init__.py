"""Dead-code and naming-smell analyzer driven by a language server."""
