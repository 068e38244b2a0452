"""Simulated RPC, a checked codec, a key/value model and a MapReduce runtime."""

__version__ = "0.1.0"
__all__ = ["codec", "kvtypes", "labrpc", "mapreduce"]