# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""S3-compatible object storage client with multipart transfers.

- SigV4 request signing (signing)
- Virtual-hosted request targets (endpoint)
- Signed round trips and per-operation wrappers (client)
- Multipart upload and cross-endpoint copy (transfer)
- Typed errors for transport, protocol and decode failures (errors)
"""

from s3mover.chunk_reader import BoundedChunkReader
from s3mover.client import S3Client
from s3mover.config import (
    ClientConfig,
    ConfigError,
    Credentials,
    PayloadPolicy,
    Settings,
    TransferConfig,
)
from s3mover.endpoint import Endpoint, EndpointError, RequestTarget
from s3mover.errors import (
    CompletionError,
    DecodeError,
    PartUploadError,
    ProtocolError,
    S3Error,
    TransferAbortedError,
    TransferCancelledError,
    TransportError,
)
from s3mover.signing import sign
from s3mover.transfer import (
    AbortReport,
    BufferSource,
    FileSource,
    RemoteObjectSource,
    TransferCoordinator,
    TransferResult,
    TransferStrategy,
    plan_parts,
)
from s3mover.transport import (
    HttpExecutor,
    HttpRequest,
    HttpResponse,
    HttpxExecutor,
)


__all__ = [
    # chunk_reader
    "BoundedChunkReader",
    # client
    "S3Client",
    # config
    "ClientConfig",
    "ConfigError",
    "Credentials",
    "PayloadPolicy",
    "Settings",
    "TransferConfig",
    # endpoint
    "Endpoint",
    "EndpointError",
    "RequestTarget",
    # errors
    "CompletionError",
    "DecodeError",
    "PartUploadError",
    "ProtocolError",
    "S3Error",
    "TransferAbortedError",
    "TransferCancelledError",
    "TransportError",
    # signing
    "sign",
    # transfer
    "AbortReport",
    "BufferSource",
    "FileSource",
    "RemoteObjectSource",
    "TransferCoordinator",
    "TransferResult",
    "TransferStrategy",
    "plan_parts",
    # transport
    "HttpExecutor",
    "HttpRequest",
    "HttpResponse",
    "HttpxExecutor",
]
