# -*- coding: utf-8 -*-
# raffle_backend/app/schemas/__init__.py
