"""Protocol layer: wire messages, transports, client, connection pool.

Import the concrete pieces from their modules (``toolmesh.protocol.client``,
``toolmesh.protocol.pool``, ``toolmesh.protocol.transport``); this package
only re-exports the message model.
"""

from .messages import ErrorObject, ProtocolMessage

__all__ = ["ErrorObject", "ProtocolMessage"]
