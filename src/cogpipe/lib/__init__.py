"""
Lib: the vocabulary of the cognitive pipeline.

- frames: instruction templates and deterministic prompt frames
- parsing: completion text -> validated output models
- primitives: per-kind specs and semantic rules
- connectors: external data fetch for observe, with a staleness policy
"""
