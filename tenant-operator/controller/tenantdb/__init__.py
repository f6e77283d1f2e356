"""PostgreSQL tenant database controller"""
