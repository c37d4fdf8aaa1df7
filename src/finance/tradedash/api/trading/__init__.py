"""
Exchange Trading

`client.py` talks to individual exchanges through a pluggable transport; `service.py` validates dashboard
requests and shapes the responses defined in `schemas.py`.
"""
