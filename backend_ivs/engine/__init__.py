"""
External engine adapters: web3 contract client, log-polling notification stream,
and an in-memory engine/relayer used for local simulation and tests.
"""
