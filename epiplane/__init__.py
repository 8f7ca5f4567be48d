# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.

"""
Epiplane — control plane of a multi-tenant journal publishing front end.

Routes requests to journals, orchestrates targeted rebuilds and guards cache
revalidation and third-party proxies.
"""

__version__ = "0.1.0"
