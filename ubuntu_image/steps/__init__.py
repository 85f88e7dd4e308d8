from .step_10_prepare_image import PrepareImageStep
from .step_12_load_gadget_yaml import LoadGadgetYamlStep
from .step_14_bootstrap_rootfs import BootstrapRootfsStep
from .step_16_install_packages import InstallPackagesStep
from .step_18_customize_rootfs import CustomizeRootfsStep
from .step_19_generate_package_manifest import GeneratePackageManifestStep
from .step_30_load_layout import LoadLayoutStep
from .step_40_create_disk_image import CreateDiskImageStep
from .step_45_partition_image import PartitionImageStep
from .step_50_populate_structures import PopulateStructuresStep
from .step_60_install_bootloader import InstallBootloaderStep
from .step_80_finalize import FinalizeStep
from .step_85_compress import CompressStep
from .step_90_generate_manifest import GenerateManifestStep

__all__ = [
    "PrepareImageStep",
    "LoadGadgetYamlStep",
    "BootstrapRootfsStep",
    "InstallPackagesStep",
    "CustomizeRootfsStep",
    "GeneratePackageManifestStep",
    "LoadLayoutStep",
    "CreateDiskImageStep",
    "PartitionImageStep",
    "PopulateStructuresStep",
    "InstallBootloaderStep",
    "FinalizeStep",
    "CompressStep",
    "GenerateManifestStep",
]
