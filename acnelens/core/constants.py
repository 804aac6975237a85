"""System-wide constants for the acne classifier."""

# Canonical acne classes. Position in this tuple is the class index used by
# every trained artifact; bump ACNE_LABEL_SET_VERSION when it changes.
ACNE_TYPES = (
    "whitehead",
    "blackhead",
    "papule",
    "pustule",
    "nodule",
    "cyst",
    "normal",
)
ACNE_LABEL_SET_VERSION = "1"

# Preprocessing
IMAGE_SIZE = 224
IMAGE_CHANNELS = 3
RESIZE_INTERPOLATION = "bilinear"
PIXEL_SCALE = 255.0
SUPPORTED_IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png"})

# Model artifact layout
ARTIFACT_FORMAT = "acnelens-classifier-head"
ARTIFACT_FORMAT_VERSION = 1
ARTIFACT_MANIFEST = "model.json"
ARTIFACT_WEIGHTS = "weights.pt"
ARTIFACT_LABELS = "labels.json"
