"""Example gRPC target server.

This package hosts:
- The bundled example definition (in `protos/`), loaded at startup through
  the same compiler/registry the bridge uses, so no generated stubs are needed.
- Server bootstrap and interceptors (request id, logging, bearer-token auth)
  covering all four call shapes.
- The example service implementation.
"""
