"""
Core utilities: exceptions and cross-cutting concerns shared by the
decryption, engine and tools packages.
"""
