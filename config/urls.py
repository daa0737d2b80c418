"""
URL configuration for the HMS authorization engine.

The engine is consumed in-process through ``apps.rbac.services``; HTTP
surfaces are mounted by the host project.
"""
urlpatterns = []
