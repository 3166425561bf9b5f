"""Ledger service component tests"""
