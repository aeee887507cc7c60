from .s3_gateway import ObjectStore, S3ObjectStore, content_type_for

__all__ = ["ObjectStore", "S3ObjectStore", "content_type_for"]
