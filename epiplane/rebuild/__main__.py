# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.

from epiplane.rebuild.cli import main

main()
