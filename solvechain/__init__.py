"""SolveChain backend: chained multi-model problem solving."""
