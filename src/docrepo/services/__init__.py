"""Service layer — mapping, bulk execution, validation, repositories.

Services may import from domain and infrastructure layers.
They must never import from commands or output.
"""
