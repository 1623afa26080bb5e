import time

from google.api_core import exceptions
from google.cloud import monitoring_v3

from elastic_tier.metric_monitor import MetricUnavailable, Statistic


REDUCERS = {
    Statistic.AVERAGE: monitoring_v3.Aggregation.Reducer.REDUCE_MEAN,
    Statistic.MAXIMUM: monitoring_v3.Aggregation.Reducer.REDUCE_MAX,
    Statistic.MINIMUM: monitoring_v3.Aggregation.Reducer.REDUCE_MIN,
}


class CloudMonitoringSource:
    def __init__(self, project_id, metric_type="kubernetes.io/container/cpu/limit_utilization",
                 client=None):
        self.project_id = project_id
        self.metric_type = metric_type
        self.client = client or monitoring_v3.MetricServiceClient()
        self.project_name = f"projects/{project_id}"

    def sample(self, statistic, pool_name, period):
        now = time.time()
        seconds = max(int(period), 60)
        interval = monitoring_v3.TimeInterval(
            {
                "end_time": {"seconds": int(now)},
                "start_time": {"seconds": int(now - seconds)},
            }
        )
        aggregation = monitoring_v3.Aggregation(
            {
                "alignment_period": {"seconds": seconds},
                "per_series_aligner": monitoring_v3.Aggregation.Aligner.ALIGN_MEAN,
                "cross_series_reducer": REDUCERS[statistic],
            }
        )
        filter_str = (
            f'metric.type = "{self.metric_type}" '
            f'AND metadata.user_labels.pool = "{pool_name}"'
        )

        try:
            results = self.client.list_time_series(
                request={
                    "name": self.project_name,
                    "filter": filter_str,
                    "interval": interval,
                    "aggregation": aggregation,
                    "view": monitoring_v3.ListTimeSeriesRequest.TimeSeriesView.FULL,
                }
            )
            for result in results:
                if result.points:
                    value = result.points[0].value.double_value
                    return round(value * 100, 2)
        except exceptions.GoogleAPICallError as e:
            raise MetricUnavailable(f"{self.metric_type}: {e}") from e

        # No datapoints in the window
        return None
