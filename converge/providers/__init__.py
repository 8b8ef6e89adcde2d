"""Provider plugins: the abstract contract, the registry and the in-memory mock."""
