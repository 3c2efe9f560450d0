from vendorflow.models.vendor import Vendor, VendorMessage  # noqa: F401
from vendorflow.models.task import OutreachTask  # noqa: F401
from vendorflow.models.activity_log import VendorActivity  # noqa: F401
