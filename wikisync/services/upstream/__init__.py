# Upstream GraphQL access
from wikisync.services.upstream.batch import Batch, BatchBuilder, BatchItem
from wikisync.services.upstream.client import GraphQLClient, WikiApi
from wikisync.services.upstream.cost import CostEstimator, FieldShape, META_SHAPE, DETAIL_SHAPE, DEEP_SHAPE

__all__ = [
    "Batch", "BatchBuilder", "BatchItem", "GraphQLClient", "WikiApi",
    "CostEstimator", "FieldShape", "META_SHAPE", "DETAIL_SHAPE", "DEEP_SHAPE",
]
