"""Concrete collaborators: HTTP transport, chain clients, signer, encoder."""

from trustbridge.adapters.canonical_encoder import CanonicalJsonEncoder
from trustbridge.adapters.dvn import DvnClient
from trustbridge.adapters.evm import EvmRpcClient, Web3Broadcaster, parse_hex_quantity
from trustbridge.adapters.http import HttpxTransport, strip_headers
from trustbridge.adapters.local_signer import LocalKeySigner, recover_address
from trustbridge.adapters.mempool import MempoolClient

__all__ = [
    "CanonicalJsonEncoder",
    "DvnClient",
    "EvmRpcClient",
    "HttpxTransport",
    "LocalKeySigner",
    "MempoolClient",
    "Web3Broadcaster",
    "parse_hex_quantity",
    "recover_address",
    "strip_headers",
]
