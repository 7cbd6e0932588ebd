"""
All the structures and functions to manipulate the K8s objects' fields.

Grouped by the type of the fields and the purpose of the manipulation:
bodies & references for addressing, finalizers for deletion blocking,
patches for the merge-patches, conditions for the status conditions.

All the functions are purely data-manipulative and computational.
No external calls or any i/o activities are done here.
"""
