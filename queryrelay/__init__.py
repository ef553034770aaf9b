"""
QueryRelay - Command/Result Exchange for Disconnected Query Agents

A control plane submits query requests; agents with private access to a
data source claim them, execute them and stream rows back. The only
channel between the two sides is a shared durable store.

Architecture:
- Each module is self-contained with clear interfaces
- Modules are completely replaceable
- No module knows the internals of another
- All communication through the shared store

Modules:
- storage: Shared document/collection store abstraction
- commands: Command record model and status state machine
- dispatcher: Requester-side command submission
- channel: Result channel creation, enumeration and teardown
- observer: Requester-side status watch and result discovery
- executor: Agent-side binding and reference agent
- registry: Template store and target registry collaborators
- export: Tabular export sink
- pull: Cross-tenant bulk pull of latest results
- auth: API key authentication
- config: Application configuration
"""

__version__ = "1.0.0"
