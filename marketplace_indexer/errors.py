"""
Indexer exceptions.
"""


class IndexerError(Exception):
    """Base class for errors raised by the indexer"""


class ConfigError(IndexerError):
    """Raised when the configuration cannot be used"""


class UnsupportedContractError(IndexerError):
    """The contract implements neither ERC-721 nor ERC-1155"""


class NotAContractError(IndexerError):
    """No bytecode at the address"""


class ImportJobNotFound(IndexerError):
    pass
