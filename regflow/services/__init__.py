"""Services: state store and sync, validation, polling, remote client, orchestration"""
