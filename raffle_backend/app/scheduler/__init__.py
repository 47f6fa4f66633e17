# -*- coding: utf-8 -*-
# raffle_backend/app/scheduler/__init__.py
