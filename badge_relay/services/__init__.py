"""
Badge relay services: tiers, attempt store, chain clients, proof
verification, run completion and the retry queue.
"""
