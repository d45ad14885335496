"""
Marketplace indexer
Keeps a relational view of NFT ownership and marketplace activity in sync with the chain
"""

__version__ = "0.1.0"
