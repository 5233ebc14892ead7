"""Keyword co-occurrence networks built on demand from aggregation queries.

Nothing here is persisted: a network is recomputed for each search filter, and
the nodes of an exploration session travel as an explicit `GraphState` value.
"""
