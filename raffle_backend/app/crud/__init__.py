# -*- coding: utf-8 -*-
# raffle_backend/app/crud/__init__.py
from .raffles_crud import RafflesCRUD

__all__ = ["RafflesCRUD"]
