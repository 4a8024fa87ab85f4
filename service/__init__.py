"""
Alignment HTTP service

- POST /align          master + target uploads -> aligned PNG, X-Alignment-Metadata header (JSON)
- POST /align/debug    same inputs -> match visualisation PNG
- POST /classify       image upload -> {"needs_perspective_correction": bool}
- GET  /health

Entry point:
    python -m service.server
"""
