"""
Adapters for the requestor's external collaborators: the shared Redis store,
the HTTP transport and asynchronous cookie jars.
"""
