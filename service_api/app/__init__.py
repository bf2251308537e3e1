"""
PetCare API service package.

Structure:
- app.main: FastAPI app, store lifecycle and route wiring.
- app.caching: Response cache stages, key policies and store adapters.
- app.routes: Cache administration endpoints.
"""
