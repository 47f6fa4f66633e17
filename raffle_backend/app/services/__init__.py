# -*- coding: utf-8 -*-
# raffle_backend/app/services/__init__.py
