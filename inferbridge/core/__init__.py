"""
Core boundary module.

Provides the engine-facing building blocks:
- errors: Error taxonomy and the process-wide last-error channel
- handles: Handle registry for opaque cross-boundary handles
- config: EngineConfig and its enums
- request: RequestParams, ResponseData, ModelInfo, VersionInfo
- engine: Engine lifecycle and the generation request/response protocol
"""

__all__ = []
