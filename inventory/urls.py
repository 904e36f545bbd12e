from rest_framework.routers import DefaultRouter

from inventory.views import InventoryMovementViewSet, ProductViewSet, PurchaseViewSet, VendorViewSet

router = DefaultRouter()
router.register(r"vendors", VendorViewSet, basename="vendor")
router.register(r"products", ProductViewSet, basename="product")
router.register(r"purchases", PurchaseViewSet, basename="purchase")
router.register(r"inventory/movements", InventoryMovementViewSet, basename="inventory-movement")

urlpatterns = router.urls
