# -*- coding: utf-8 -*-
# raffle_backend/app/routes/__init__.py
# Роутеры HTTP API; подключаются в create_app().
from . import raffles_routes

__all__ = ["raffles_routes"]
