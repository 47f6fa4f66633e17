# -*- coding: utf-8 -*-
# raffle_backend/app/integrations/__init__.py
# Клиенты внешних сервисов: шлюз блокчейна и исполнитель платежей.
