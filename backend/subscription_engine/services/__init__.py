"""
Business logic services package.

WHY: Services contain the subscription lifecycle, entitlement and
reconciliation logic, separated from API routes and data access
(API → Service → Repository/DAO).
"""
