"""Benchmark signed distance resolution, residual evaluation and full fits.

Run with: python benchmark/bench_signed_distance.py
"""

import argparse
import time

import numpy as np


def benchmark(func, inputs, n_warmup=2, n_iter=20):
    """Run benchmark and return mean time in ms."""
    for _ in range(n_warmup):
        func(**inputs)

    start = time.perf_counter()
    for _ in range(n_iter):
        func(**inputs)
    elapsed = time.perf_counter() - start
    return elapsed / n_iter * 1000  # ms


def brute_force_distance(points, mesh):
    from shapeundercloth.np.signed_distance import closest_point_on_triangles

    corners = mesh.vertices[mesh.faces]
    best = np.full(len(points), np.inf)
    for i_point, point in enumerate(points):
        closest, _ = closest_point_on_triangles(np.broadcast_to(point, (len(corners), 3)), corners)
        best[i_point] = np.min(np.linalg.norm(point - closest, axis=-1))
    return best


def sphere_mesh(num_lat, num_lon):
    from shapeundercloth.np import TargetMesh

    lat = np.linspace(0, np.pi, num_lat)[1:-1]
    lon = np.linspace(0, 2 * np.pi, num_lon, endpoint=False)
    lat, lon = np.meshgrid(lat, lon, indexing='ij')
    ring = np.stack([np.sin(lat) * np.cos(lon), np.cos(lat), np.sin(lat) * np.sin(lon)], axis=-1)
    vertices = np.concatenate([[[0, 1, 0]], ring.reshape(-1, 3), [[0, -1, 0]]])

    n_rings = num_lat - 2
    ids = 1 + np.arange(n_rings * num_lon).reshape(n_rings, num_lon)
    following = np.roll(ids, -1, axis=1)
    faces = [np.stack([np.zeros(num_lon, int), following[0], ids[0]], axis=1)]
    for r in range(n_rings - 1):
        faces.append(np.stack([ids[r], following[r], following[r + 1]], axis=1))
        faces.append(np.stack([ids[r], following[r + 1], ids[r + 1]], axis=1))
    bottom = len(vertices) - 1
    faces.append(np.stack([np.full(num_lon, bottom), ids[-1], following[-1]], axis=1))
    return TargetMesh(vertices, np.concatenate(faces), name=f'sphere{num_lat}x{num_lon}')


def bench_resolver():
    from shapeundercloth.np import signed_distance

    print('Benchmarking signed_distance')
    print('=' * 60)
    rng = np.random.RandomState(0)
    for num_lat, num_lon in [(20, 40), (50, 100), (100, 200)]:
        mesh = sphere_mesh(num_lat, num_lon)
        for num_points in [1000, 6890]:
            points = rng.randn(num_points, 3) * 0.5
            time_kd = benchmark(signed_distance, dict(points=points, mesh=mesh))
            print(f'\nfaces={mesh.num_faces:6d}, points={num_points:5d}')
            print(f'  KD-tree pruned: {time_kd:9.3f} ms')

            if mesh.num_faces <= 2000:
                time_bf = benchmark(
                    brute_force_distance, dict(points=points, mesh=mesh), n_warmup=0, n_iter=1
                )
                print(f'  Brute force:    {time_bf:9.3f} ms  ({time_bf / time_kd:5.1f}x slower)')
                dists = np.abs(signed_distance(points, mesh).signed_dists)
                if not np.allclose(dists, brute_force_distance(points, mesh), atol=1e-10):
                    print('  WARNING: pruned result differs!')


def bench_fit(model_name):
    from shapeundercloth.np import (
        EvaluationContext,
        FitConfig,
        ShapeUnderClothOptimizer,
        TargetMesh,
        get_cached_body_model,
    )

    try:
        body_model = get_cached_body_model(model_name, 'neutral')
    except FileNotFoundError as e:
        print(f'Skipping residual evaluation: {e}')
        return

    print(f'\nBenchmarking EvaluationContext.prepare ({model_name})')
    print('=' * 60)
    pose = np.random.randn(body_model.pose_size) * 0.1
    target_vertices = body_model(pose=pose)['vertices'] * 1.05
    target = TargetMesh(target_vertices, body_model.faces)

    for kind in ['translation', 'shape', 'pose', 'displacement']:
        context = EvaluationContext.create(body_model, target, kind)
        time_values = benchmark(
            context.prepare, dict(evaluate_jacobians=False, new_evaluation_point=True)
        )
        time_jac = benchmark(
            lambda: (context.reset(), context.prepare(True, True)), {}, n_iter=5
        )
        print(f'  {kind:>12}: values {time_values:8.2f} ms, with Jacobian {time_jac:8.2f} ms')

    print(f'\nBenchmarking ShapeUnderClothOptimizer.find_optimal_parameters ({model_name})')
    print('=' * 60)
    for strategy, kind in [('directional', 'pose'), ('distance', 'pose'), ('distance', 'shape')]:
        config = FitConfig(
            strategy=strategy, parameter_kind=kind, max_num_iterations=10, log_progress=False
        )
        try:
            optimizer = ShapeUnderClothOptimizer(body_model, target, config=config)
        except FileNotFoundError as e:
            print(f'Skipping full fit: {e}')
            return
        start = time.perf_counter()
        optimizer.find_optimal_parameters()
        elapsed = (time.perf_counter() - start) * 1000
        summary = optimizer.summary
        print(
            f'  {strategy:>11}/{kind:<5}: {elapsed:9.1f} ms, '
            f'{len(summary.iterations)} iterations, final cost {summary.final_cost:.3e}'
        )


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument('--model', default='smpl', choices=['smpl', 'smplx', 'smplh16'])
    parser.add_argument('--skip-fit', action='store_true')
    args = parser.parse_args()

    bench_resolver()
    if not args.skip_fit:
        bench_fit(args.model)


if __name__ == '__main__':
    main()
