"""Picodata backend: client wrapper, log adapter, repositories, transactions and migrations."""