"""
General-purpose helpers of the runtime environment (versions, type aliases).

They know nothing about the registered clusters, hubs, or the reconciliation.
"""
