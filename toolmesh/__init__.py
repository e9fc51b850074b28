"""toolmesh.

Tool execution and external-protocol orchestration core for AI assistants:
the subsystem that accepts a model-issued capability call, validates and gates
it, runs it locally or on a remote capability server, and returns one
structured result.

High-level architecture
-----------------------

Control flow for every call::

    caller -> Validator -> ConfirmationGate -> ExecutionEngine
           -> {LocalCapability | RemoteCapability -> ConnectionPool -> ProtocolClient -> server}
           -> result pipeline -> CapabilityResult

Core subpackages
----------------

- ``toolmesh.capabilities``: descriptors, the ``Capability`` protocol, the
  registry, builtin workspace capabilities and the remote proxy.
- ``toolmesh.policy``: argument/trust validation and the confirmation gate.
- ``toolmesh.runtime``: concurrency limiter, retry policy, execution engine and
  result pipeline.
- ``toolmesh.protocol``: wire messages, the pipe / request-response /
  push-stream transports, the protocol client and the connection pool.
- ``toolmesh.server``: answer the same protocol for local capabilities.
- ``toolmesh.core``: settings and logging setup.

Typical workflow
----------------

Most integrations should use ``toolmesh.service.ToolService``:

1. Build it from settings (``ToolService.from_settings()``).
2. Register remote servers (``register_server``) and local capabilities.
3. Submit calls (``submit`` / ``submit_batch``); failures come back as
   ``CapabilityResult.error_kind``, never as exceptions.
"""

__version__ = "0.1.0"
