"""MediaForge — FastAPI REST API layer.

Modules
-------
main
    Application factory, route handlers, error mapping and the ``main()``
    CLI entry point.
models
    Pydantic models for request validation.
"""
