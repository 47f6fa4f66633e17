# -*- coding: utf-8 -*-
# raffle_backend/__init__.py
